"""
Engine error taxonomy.

- NoChannelAvailable: no transport can reach the lead. The step is ledgered as failed.
- TransportError: provider call failed or timed out. Ledgered as failed, never retried here;
  `retryable` is reported on the delivery outcome and the send_failed audit row.
- LimitExceeded: monthly SMS cap reached. Fails before any provider call.
- DuplicateRun: run already active for (automation, lead). Swallowed by the trigger path.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for conversation-engine errors."""

    code = "engine_error"


class NoChannelAvailable(EngineError):
    code = "no_channel"


class TransportError(EngineError):
    code = "transport_error"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        error_code: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.error_code = error_code
        self.retryable = retryable


class LimitExceeded(EngineError):
    code = "limit_exceeded"

    def __init__(self, client_id, limit: int):
        super().__init__(f"Monthly SMS limit reached ({limit}) for client {str(client_id)[:8]}")
        self.client_id = client_id
        self.limit = limit


class DuplicateRun(EngineError):
    code = "duplicate_run"


class LedgerError(EngineError):
    code = "ledger_error"
