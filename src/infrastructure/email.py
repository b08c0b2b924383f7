# src/infrastructure/email.py
import html as html_lib
import os
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

import aiosmtplib
import structlog

logger = structlog.get_logger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM = os.getenv("SMTP_FROM", "notifications@x2ig.app")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
APP_URL = os.getenv("APP_URL", "http://localhost:3000")


async def send_email(
    to_email: str,
    subject: str,
    plain_text: str,
    html: Optional[str] = None
) -> Optional[str]:
    """
    Send an email asynchronously using SMTP (aiosmtplib).
    Returns the Message-ID, or None when SMTP is not configured in development.
    Raises exception on failure.
    """
    if ENVIRONMENT == "development" and (not SMTP_HOST or not SMTP_USER):
        logger.info("email_send_stub_dev", to=to_email, subject=subject)
        return None

    msg = EmailMessage()
    msg["From"] = SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=SMTP_FROM.split("@")[-1])
    msg.set_content(plain_text)
    if html:
        msg.add_alternative(html, subtype="html")

    try:
        await aiosmtplib.send(
            msg,
            hostname=SMTP_HOST,
            port=SMTP_PORT,
            username=SMTP_USER or None,
            password=SMTP_PASSWORD or None,
            start_tls=True if SMTP_PORT in (587, 25) else False,
        )
        logger.info("email_sent", to=to_email, subject=subject)
        return msg["Message-ID"]
    except Exception as e:
        logger.exception("email_send_failed", to=to_email, subject=subject, error=str(e))
        raise


def render_post_email(post_text: str, image_url: str, published: bool, permalink: Optional[str] = None) -> str:
    heading = "Your post is live on Instagram!" if published else "Your Instagram Story is Ready!"
    if published:
        action_url = permalink or image_url
        action_label = "View on Instagram"
    else:
        action_url = image_url
        action_label = "Download image"
    return f"""<!DOCTYPE html>
<html>
  <body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f5f5f5;">
    <div style="background-color: #ffffff; border-radius: 12px; padding: 30px;">
      <h1 style="color: #1a1a1a; font-size: 24px;">{heading}</h1>
      <div style="background-color: #f8f9fa; border-left: 4px solid #667eea; border-radius: 8px; padding: 15px; font-style: italic; color: #555;">
        {html_lib.escape(post_text)}
      </div>
      <div style="text-align: center; margin: 30px 0;">
        <img src="{html_lib.escape(image_url, quote=True)}" alt="" style="max-width: 100%; border-radius: 12px;" />
      </div>
      <div style="text-align: center;">
        <a href="{html_lib.escape(action_url, quote=True)}" style="display: inline-block; background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); color: white; padding: 14px 28px; border-radius: 8px; text-decoration: none; font-weight: 600;">{action_label}</a>
      </div>
      <p style="text-align: center; color: #999; font-size: 12px; margin-top: 30px;">
        <a href="{html_lib.escape(APP_URL, quote=True)}/scheduled" style="color: #999;">Manage your scheduled posts</a>
      </p>
    </div>
  </body>
</html>
"""
