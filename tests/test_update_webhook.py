"""
Tests for the Twilio webhook update script.
"""

from unittest.mock import MagicMock, patch

from scripts.update_twilio_webhook import build_url, main


def test_build_url():
    assert build_url("abc.ngrok.app", "/incoming-call") == "https://abc.ngrok.app/incoming-call"
    assert build_url("https://abc.ngrok.app/", "/status", "8443") == "https://abc.ngrok.app:8443/status"
    assert build_url("abc.ngrok.app", "/fail", params="x=1") == "https://abc.ngrok.app/fail?x=1"
    assert build_url("", "/fail") is None


def test_main_updates_the_matching_number():
    number = MagicMock()
    number.update.return_value.sid = "PN123"

    with patch("twilio.rest.Client") as client_cls:
        client_cls.return_value.incoming_phone_numbers.list.return_value = [number]
        code = main(["-n", "+15550003333", "--silent"])

    assert code == 0
    client_cls.return_value.incoming_phone_numbers.list.assert_called_once_with(phone_number="+15550003333")
    number.update.assert_called_once_with(
        voice_url="https://test.ngrok.io/incoming-call",
        voice_fallback_url="https://test.ngrok.io/fail",
        status_callback="https://test.ngrok.io/status",
    )


def test_main_reports_unknown_number():
    with patch("twilio.rest.Client") as client_cls:
        client_cls.return_value.incoming_phone_numbers.list.return_value = []
        code = main(["-n", "+15550003333", "--silent"])

    assert code == 1


def test_main_can_be_cancelled():
    with patch("twilio.rest.Client") as client_cls, patch("builtins.input", return_value="n"):
        code = main(["-n", "+15550003333"])

    assert code == 0
    client_cls.assert_not_called()
