"""Tests for email_service.py: verification email construction and error handling.

resend is swapped out in sys.modules; no real email is sent.
"""

import os
from unittest.mock import MagicMock, patch

from email_service import send_verification_email


def _sent_params(mock_resend):
    return mock_resend.Emails.send.call_args[0][0]


class TestSendVerificationEmail:
    def test_missing_api_key_returns_false(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("RESEND_API_KEY", None)
            result = send_verification_email("user@example.com", "jane", "tok123")
        assert result is False

    @patch.dict(os.environ, {"RESEND_API_KEY": "re_test_key"})
    def test_successful_send(self):
        mock_resend = MagicMock()
        with patch.dict("sys.modules", {"resend": mock_resend}):
            mock_resend.Emails.send.return_value = {"id": "msg_123"}
            result = send_verification_email("user@example.com", "jane", "tok123")
        assert result is True
        mock_resend.Emails.send.assert_called_once()
        assert mock_resend.api_key == "re_test_key"

    @patch.dict(os.environ, {"RESEND_API_KEY": "re_test_key"})
    def test_api_raises_returns_false(self):
        mock_resend = MagicMock()
        with patch.dict("sys.modules", {"resend": mock_resend}):
            mock_resend.Emails.send.side_effect = RuntimeError("API error")
            result = send_verification_email("user@example.com", "jane", "tok123")
        assert result is False

    @patch.dict(os.environ, {"RESEND_API_KEY": "re_test_key"})
    def test_html_escapes_username(self):
        mock_resend = MagicMock()
        with patch.dict("sys.modules", {"resend": mock_resend}):
            send_verification_email("user@example.com", '<script>alert("xss")</script>', "tok123")
            html_body = _sent_params(mock_resend)["html"]
        assert "<script>" not in html_body
        assert "&lt;script&gt;" in html_body

    @patch.dict(os.environ, {"RESEND_API_KEY": "re_test_key", "HOMEFIND_CLIENT_URL": "https://homes.test/"})
    def test_link_uses_client_url(self):
        mock_resend = MagicMock()
        with patch.dict("sys.modules", {"resend": mock_resend}):
            send_verification_email("user@example.com", "jane", "tok123")
            params = _sent_params(mock_resend)
        assert "https://homes.test/verify-email/tok123" in params["html"]
        assert "https://homes.test/verify-email/tok123" in params["text"]

    @patch.dict(os.environ, {"RESEND_API_KEY": "re_test_key"})
    def test_email_params_structure(self):
        mock_resend = MagicMock()
        with patch.dict("sys.modules", {"resend": mock_resend}):
            os.environ.pop("HOMEFIND_FROM_ADDRESS", None)
            send_verification_email("user@example.com", "jane", "tok123")
            params = _sent_params(mock_resend)
        assert params["to"] == ["user@example.com"]
        assert "HomeFind" in params["from"]
        assert params["subject"] == "Verify your HomeFind account"

    @patch.dict(os.environ, {"RESEND_API_KEY": "re_test_key", "HOMEFIND_FROM_ADDRESS": "Homes <no-reply@homes.test>"})
    def test_from_address_override(self):
        mock_resend = MagicMock()
        with patch.dict("sys.modules", {"resend": mock_resend}):
            send_verification_email("user@example.com", "jane", "tok123")
            assert _sent_params(mock_resend)["from"] == "Homes <no-reply@homes.test>"
