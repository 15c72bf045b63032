"""
Email delivery via Resend. Account verification links.

Email failure must never break sign-up; all send functions swallow
exceptions and return False on failure.
"""

import html
import os
import logging

logger = logging.getLogger(__name__)

DEFAULT_FROM_ADDRESS = "HomeFind <accounts@homefind.app>"


def _mask(email: str) -> str:
    return email[:3] + "***"


def send_verification_email(to_email: str, username: str, token: str) -> bool:
    """
    Send the verification link for a new (or re-requested) account.

    Returns True on success, False on failure. Never raises.
    """
    api_key = os.environ.get("RESEND_API_KEY")
    if not api_key:
        logger.warning(
            "RESEND_API_KEY not set; skipping verification email to %s",
            _mask(to_email),
        )
        return False

    try:
        import resend

        resend.api_key = api_key

        client_url = os.environ.get("HOMEFIND_CLIENT_URL", "http://localhost:5173")
        verification_url = f"{client_url.rstrip('/')}/verify-email/{token}"
        safe_name = html.escape(username)
        safe_url = html.escape(verification_url)

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: system-ui, sans-serif; line-height: 1.5; color: #1f2937;">
  <div style="max-width: 560px; margin: 0 auto; padding: 1.5rem;">
    <p style="font-size: 1.25rem; font-weight: 600; color: #334155;">Welcome {safe_name}!</p>
    <p>Thanks for signing up. Please confirm your email address to activate your account.</p>
    <p style="margin: 1.5rem 0;">
      <a href="{safe_url}" style="display: inline-block; padding: 0.75rem 1.5rem; background: #334155; color: #fff; text-decoration: none; border-radius: 6px; font-weight: 600;">Verify email</a>
    </p>
    <p style="font-size: 0.875rem; color: #6b7280;">
      This link expires in 24 hours. If you didn't create this account, you can ignore this email.
    </p>
    <p style="font-size: 0.75rem; color: #6b7280; word-break: break-all;">{safe_url}</p>
  </div>
</body>
</html>
""".strip()

        text_body = (
            f"Welcome {username}!\n\n"
            f"Please verify your email by visiting this link:\n{verification_url}\n\n"
            "This link will expire in 24 hours.\n\n"
            "If you didn't create this account, please ignore this email."
        )

        params = {
            "from": os.environ.get("HOMEFIND_FROM_ADDRESS", DEFAULT_FROM_ADDRESS),
            "to": [to_email],
            "subject": "Verify your HomeFind account",
            "html": html_body,
            "text": text_body,
        }

        resend.Emails.send(params)
        logger.info("Verification email sent to %s", _mask(to_email))
        return True

    except Exception as e:
        logger.warning(
            "Failed to send verification email to %s: %s",
            _mask(to_email),
            e,
            exc_info=True,
        )
        return False
