"""
Database models - import all models here so Alembic can discover them.
"""
from leadflow.models.client import Client
from leadflow.models.lead import Lead
from leadflow.models.conversation import ConversationMessage
from leadflow.models.automation import Automation
from leadflow.models.automation_run import AutomationRun
from leadflow.models.sms_settings import SMSSettings
from leadflow.models.event_log import EventLog

__all__ = [
    "Client",
    "Lead",
    "ConversationMessage",
    "Automation",
    "AutomationRun",
    "SMSSettings",
    "EventLog",
]
