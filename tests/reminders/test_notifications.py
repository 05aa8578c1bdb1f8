"""
WhatsApp transport and message template tests.
"""
import json
import pytest
import httpx

from app.core.notifications import WhatsAppService, format_whatsapp_number
from app.models.reminder_model import FollowupType, ReminderType
from app.services.message_templates import (
    render_followup_message,
    render_reminder_message,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("081234567890", "6281234567890"),
        ("0812-3456-7890", "6281234567890"),
        ("+62 812 3456 7890", "6281234567890"),
        ("81234567890", "6281234567890"),
        ("6281234567890", "6281234567890"),
    ],
)
def test_format_whatsapp_number(raw, expected):
    assert format_whatsapp_number(raw) == expected


def fonnte_service(handler) -> WhatsAppService:
    return WhatsAppService(
        provider="fonnte",
        base_url="https://fonnte.test",
        token="fonnte-token",
        timeout=1.0,
        http_transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
@pytest.mark.unit
class TestFonnteTransport:
    async def test_successful_send(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": True, "id": ["80367170"]})

        result = await fonnte_service(handler).send("081234567890", "Halo")

        assert result.success
        assert result.message_id == "80367170"
        assert seen["url"] == "https://fonnte.test/send"
        assert seen["auth"] == "fonnte-token"
        assert seen["body"] == {"target": "6281234567890", "message": "Halo"}

    async def test_rejected_by_provider(self):
        def handler(request):
            return httpx.Response(200, json={"status": False, "reason": "invalid target"})

        result = await fonnte_service(handler).send("081234567890", "Halo")

        assert not result.success
        assert result.error == "invalid target"

    async def test_http_error_status(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        result = await fonnte_service(handler).send("081234567890", "Halo")

        assert not result.success
        assert result.error.startswith("Status 503")

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await fonnte_service(handler).send("081234567890", "Halo")

        assert not result.success
        assert result.error == "timeout"

    async def test_missing_token(self):
        service = WhatsAppService(provider="fonnte", token="")

        result = await service.send("081234567890", "Halo")

        assert not result.success
        assert result.error == "Fonnte not configured"

    async def test_mock_provider(self):
        result = await WhatsAppService(provider="mock").send("081234567890", "Halo")

        assert result.success
        assert result.message_id.startswith("mock_")

    async def test_unknown_provider(self):
        result = await WhatsAppService(provider="carrier-pigeon").send("0812", "Halo")

        assert not result.success
        assert "carrier-pigeon" in result.error


class TestMessageTemplates:
    def test_plain_message_is_sent_as_is(self):
        message = render_reminder_message(
            ReminderType.MEDICATION.value, "Siti", "Minum obat sekarang"
        )

        assert message == "Minum obat sekarang"

    def test_titled_reminder_uses_template(self):
        message = render_reminder_message(
            ReminderType.APPOINTMENT.value,
            "Siti",
            "Datang jam 09:00",
            title="Kontrol rutin",
            description="Poli penyakit dalam",
        )

        assert message.startswith("📅 *Pengingat Janji Temu*")
        assert "Halo Siti," in message
        assert "*Kontrol rutin*" in message
        assert "Poli penyakit dalam" in message
        assert message.endswith("💙 Tim PRIMA")

    def test_unknown_reminder_type_falls_back_to_general(self):
        message = render_reminder_message("VACCINE", "Siti", "Body", title="Title")

        assert message.startswith("⏰ *Pengingat*")

    def test_followup_message(self):
        message = render_followup_message(
            FollowupType.REMINDER_2H.value,
            ReminderType.MEDICATION.value,
            "Budi",
            reminder_title="Amlodipine",
        )

        assert "Halo Budi!" in message
        assert "2 jam yang lalu" in message
        assert "Amlodipine" in message

    def test_unknown_followup_type_uses_fallback(self):
        message = render_followup_message("REMINDER_1WEEK", None, "Budi")

        assert "Konfirmasi" in message
        assert "Halo Budi!" in message
