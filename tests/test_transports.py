"""
Transport tests - Twilio SMS, WhatsApp Cloud API and SendGrid email.
No provider is ever called: SDK entry points are patched and httpx uses a MockTransport.
"""
import json

import httpx
import pytest
from unittest.mock import MagicMock, patch

from leadflow.services.errors import TransportError
from leadflow.services.transports.email import SendGridEmailTransport
from leadflow.services.transports.sms import (
    MAX_SEGMENTS,
    TwilioSmsTransport,
    classify_error,
    count_segments,
    enforce_message_length,
    is_gsm7,
)
from leadflow.services.transports.whatsapp import WhatsAppCloudTransport


def _mock_settings(**overrides):
    settings = MagicMock()
    settings.twilio_account_sid = "AC_test"
    settings.twilio_auth_token = "token"
    settings.twilio_messaging_service_sid = ""
    settings.whatsapp_access_token = "wa_token"
    settings.whatsapp_phone_number_id = "1234567890"
    settings.whatsapp_api_base_url = "https://graph.example.com/v19.0"
    settings.sendgrid_api_key = "SG_key"
    settings.sendgrid_from_email = "messages@example.com"
    settings.sendgrid_from_name = "LeadFlow"
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


class TestClassifyError:
    """Every carrier error code should be classified correctly."""

    def test_opt_out_21610(self):
        assert classify_error("21610") == "opt_out"

    def test_landline_30006(self):
        assert classify_error("30006") == "landline"

    def test_invalid_number_21211(self):
        assert classify_error("21211") == "invalid"

    def test_transient_30007(self):
        assert classify_error("30007") == "transient"

    def test_unknown_code(self):
        assert classify_error("99999") == "unknown"

    def test_none_code(self):
        assert classify_error(None) == "unknown"


class TestSegments:
    def test_ascii_is_gsm7(self):
        assert is_gsm7("Hello World!") is True

    def test_smart_quotes_are_ucs2(self):
        assert is_gsm7("It’s a test") is False

    def test_exactly_160_gsm_one_segment(self):
        assert count_segments("x" * 160) == 1

    def test_161_gsm_two_segments(self):
        assert count_segments("x" * 161) == 2

    def test_long_message_truncated(self):
        msg, segments, _ = enforce_message_length("x" * 1000)
        assert segments <= MAX_SEGMENTS
        assert msg.endswith("...")


class TestTwilioSmsTransport:
    async def test_send_returns_sid_as_sent(self):
        transport = TwilioSmsTransport(_mock_settings())
        twilio_client = MagicMock()
        twilio_client.messages.create.return_value = MagicMock(sid="SM_test_123")

        with patch.object(transport, "_get_client", return_value=twilio_client):
            receipt = await transport.send("+15125559876", "Hi", sender="+15125550199")

        assert receipt.message_id == "SM_test_123"
        assert receipt.status == "sent"
        kwargs = twilio_client.messages.create.call_args.kwargs
        assert kwargs["from_"] == "+15125550199"
        assert kwargs["to"] == "+15125559876"

    async def test_messaging_service_wins_over_sender(self):
        transport = TwilioSmsTransport(_mock_settings(twilio_messaging_service_sid="MG_test"))
        twilio_client = MagicMock()
        twilio_client.messages.create.return_value = MagicMock(sid="SM1")

        with patch.object(transport, "_get_client", return_value=twilio_client):
            await transport.send("+15125559876", "Hi", sender="+15125550199")

        kwargs = twilio_client.messages.create.call_args.kwargs
        assert kwargs["messaging_service_sid"] == "MG_test"
        assert "from_" not in kwargs

    async def test_sdk_error_becomes_transport_error(self):
        transport = TwilioSmsTransport(_mock_settings())
        error = Exception("30006 Landline or unreachable carrier")
        error.code = 30006
        twilio_client = MagicMock()
        twilio_client.messages.create.side_effect = error

        with patch.object(transport, "_get_client", return_value=twilio_client):
            with pytest.raises(TransportError) as exc_info:
                await transport.send("+15125559876", "Hi", sender="+15125550199")

        assert exc_info.value.error_code == "30006"
        assert exc_info.value.retryable is False
        assert exc_info.value.provider == "twilio"

    async def test_missing_credentials(self):
        transport = TwilioSmsTransport(_mock_settings(twilio_account_sid=""))
        with pytest.raises(TransportError):
            await transport.send("+15125559876", "Hi", sender="+15125550199")

    def test_status_map(self):
        assert TwilioSmsTransport.map_status("queued") == "sent"
        assert TwilioSmsTransport.map_status("delivered") == "delivered"
        assert TwilioSmsTransport.map_status("undelivered") == "failed"
        assert TwilioSmsTransport.map_status("mystery") is None


class TestWhatsAppCloudTransport:
    def _make_transport(self, handler, **overrides):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return WhatsAppCloudTransport(_mock_settings(**overrides), http_client=client)

    async def test_send_posts_text_message(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

        transport = self._make_transport(handler)
        receipt = await transport.send("+15125559876", "Hi Alex")

        assert receipt.message_id == "wamid.ABC"
        assert receipt.status == "sent"
        assert captured["url"] == "https://graph.example.com/v19.0/1234567890/messages"
        assert captured["auth"] == "Bearer wa_token"
        assert captured["body"]["to"] == "15125559876"
        assert captured["body"]["text"]["body"] == "Hi Alex"

    async def test_api_error_becomes_transport_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"code": 131026, "message": "Receiver incapable"}})

        transport = self._make_transport(handler)
        with pytest.raises(TransportError) as exc_info:
            await transport.send("+15125559876", "Hi")

        assert exc_info.value.error_code == "131026"
        assert exc_info.value.retryable is False

    async def test_server_error_is_retryable(self):
        transport = self._make_transport(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(TransportError) as exc_info:
            await transport.send("+15125559876", "Hi")
        assert exc_info.value.retryable is True

    async def test_network_error_becomes_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        transport = self._make_transport(handler)
        with pytest.raises(TransportError):
            await transport.send("+15125559876", "Hi")

    async def test_not_configured(self):
        transport = self._make_transport(lambda r: httpx.Response(200), whatsapp_access_token="")
        with pytest.raises(TransportError):
            await transport.send("+15125559876", "Hi")

    def test_status_map(self):
        assert WhatsAppCloudTransport.map_status("delivered") == "delivered"
        assert WhatsAppCloudTransport.map_status("read") == "read"
        assert WhatsAppCloudTransport.map_status("deleted") is None


class TestSendGridEmailTransport:
    async def test_successful_send(self):
        transport = SendGridEmailTransport(_mock_settings())
        mock_response = MagicMock()
        mock_response.headers = {"X-Message-Id": "sg_msg_123"}

        with patch("sendgrid.SendGridAPIClient") as mock_sg_cls:
            mock_sg = MagicMock()
            mock_sg.send.return_value = mock_response
            mock_sg_cls.return_value = mock_sg

            receipt = await transport.send("alex@example.com", "Hi", sender="Austin Comfort HVAC")

        assert receipt.message_id == "sg_msg_123"
        assert receipt.status == "sent"
        mock_sg.send.assert_called_once()

    async def test_sdk_error_becomes_transport_error(self):
        transport = SendGridEmailTransport(_mock_settings())
        with patch("sendgrid.SendGridAPIClient") as mock_sg_cls:
            mock_sg_cls.return_value.send.side_effect = Exception("SendGrid down")
            with pytest.raises(TransportError):
                await transport.send("alex@example.com", "Hi")

    async def test_no_api_key(self):
        transport = SendGridEmailTransport(_mock_settings(sendgrid_api_key=""))
        with pytest.raises(TransportError):
            await transport.send("alex@example.com", "Hi")
