"""Outbound messaging helpers."""

import pytest

from app.whatsapp.messaging import (
    build_media_content,
    extract_text,
    format_phone_number,
    get_connection_status,
    send_media_message,
    send_text_message,
    sender_number,
    validate_message,
    validate_phone_number,
)
from tests.fakes import FakeSocket


def _ready_socket() -> FakeSocket:
    sock = FakeSocket(config=None)
    sock.user = {"id": "6281234567890:4@s.whatsapp.net", "name": "Shop"}
    return sock


class TestFormatting:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("081234567890", "6281234567890@s.whatsapp.net"),
            ("+62 812-3456-7890", "6281234567890@s.whatsapp.net"),
            ("81234567890", "6281234567890@s.whatsapp.net"),
            ("6281234567890", "6281234567890@s.whatsapp.net"),
            ("120363@g.us", "120363@g.us"),
        ],
    )
    def test_format_phone_number(self, raw, expected) -> None:
        assert format_phone_number(raw) == expected

    def test_long_foreign_numbers_keep_their_prefix(self) -> None:
        assert format_phone_number("4479111234567") == "4479111234567@s.whatsapp.net"

    def test_phone_validation(self) -> None:
        assert validate_phone_number("081234567890") == (True, None)
        assert validate_phone_number("") == (False, "Phone number is required")
        assert validate_phone_number("12345") == (False, "Phone number too short")
        assert validate_phone_number("1" * 16) == (False, "Phone number too long")

    def test_message_validation(self) -> None:
        assert validate_message("hello") == (True, None)
        assert validate_message("") == (False, "Message is required")
        assert validate_message(42) == (False, "Message must be a string")
        assert validate_message("x" * 4097)[0] is False
        assert validate_message("x" * 4096) == (True, None)

    def test_sender_number_strips_device_suffix(self) -> None:
        assert sender_number("6281234567890:12@s.whatsapp.net") == "6281234567890"


class TestSendText:
    @pytest.mark.anyio
    async def test_success(self) -> None:
        sock = _ready_socket()
        result = await send_text_message(sock, "081234567890", "halo")

        assert result["success"] is True
        assert result["message_id"] == "MSG1"
        assert result["to"] == "6281234567890@s.whatsapp.net"
        assert sock.sent == [("6281234567890@s.whatsapp.net", {"text": "halo"})]

    @pytest.mark.anyio
    async def test_not_connected(self) -> None:
        result = await send_text_message(FakeSocket(config=None), "081234567890", "halo")
        assert result == {"success": False, "error": "WhatsApp not connected"}
        assert (await send_text_message(None, "081234567890", "halo"))["success"] is False

    @pytest.mark.anyio
    async def test_validation_runs_before_send(self) -> None:
        sock = _ready_socket()
        result = await send_text_message(sock, "123", "halo")
        assert result == {"success": False, "error": "Phone number too short"}
        assert sock.sent == []

    @pytest.mark.anyio
    async def test_transport_error_is_reported(self) -> None:
        sock = _ready_socket()
        sock.fail_sends = True
        result = await send_text_message(sock, "081234567890", "halo")
        assert result == {"success": False, "error": "send failed"}


class TestSendMedia:
    def test_media_content_shapes(self) -> None:
        assert build_media_content({"type": "image", "url": "u", "caption": "c"}) == {
            "image": {"url": "u"},
            "caption": "c",
        }
        assert build_media_content({"type": "document", "url": "u"})["fileName"] == "document"
        assert build_media_content({"type": "audio", "url": "u", "ptt": True}) == {
            "audio": {"url": "u"},
            "ptt": True,
        }
        assert build_media_content({"type": "sticker", "url": "u"}) is None

    @pytest.mark.anyio
    async def test_send_media(self) -> None:
        sock = _ready_socket()
        result = await send_media_message(sock, "081234567890", {"type": "video", "url": "https://x/v.mp4"})
        assert result["success"] is True
        assert sock.sent[0][1] == {"video": {"url": "https://x/v.mp4"}, "caption": ""}

    @pytest.mark.anyio
    async def test_invalid_media_type(self) -> None:
        result = await send_media_message(_ready_socket(), "081234567890", {"type": "sticker", "url": "u"})
        assert result == {"success": False, "error": "Invalid media type"}


class TestInbound:
    def test_plain_and_extended_text(self) -> None:
        assert extract_text({"message": {"conversation": "hi"}}) == "hi"
        assert extract_text({"message": {"extendedTextMessage": {"text": "yo"}}}) == "yo"
        assert extract_text({"message": {"imageMessage": {}}}) == ""
        assert extract_text({}) == ""

    def test_quoted_reply_is_prefixed(self) -> None:
        message = {
            "message": {
                "extendedTextMessage": {
                    "text": "yes please",
                    "contextInfo": {"quotedMessage": {"conversation": "want a demo?"}},
                }
            }
        }
        assert extract_text(message) == '(Replying to: "want a demo?") yes please'


def test_connection_status_view() -> None:
    sock = _ready_socket()
    view = get_connection_status(sock, {"status": "open", "phone_number": "6281234567890"}, qr=None)
    assert view == {
        "status": "open",
        "is_connected": True,
        "phone_number": "6281234567890",
        "has_qr": False,
        "qr": None,
        "user": sock.user,
    }
    assert get_connection_status(None, {}, qr="q")["status"] == "disconnected"
