"""Invite emails over SMTP."""
import logging
from email.message import EmailMessage

import aiosmtplib

import config

logger = logging.getLogger(__name__)

INVITE_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #333;">Welcome to our Product Portfolio!</h2>
  <p>Hello {name},</p>
  <p>You've been invited by {admin_name} to join our exclusive product portfolio app.</p>
  <p>To get started:</p>
  <ol>
    <li>Download our mobile app</li>
    <li>Register with your email: {email}</li>
    <li>Start exploring your personalized product collection</li>
  </ol>
  <p>Best regards,<br>The Product Portfolio Team</p>
</div>
"""


def build_invite(email: str, name: str, admin_name: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = config.EMAIL_USER
    message["To"] = email
    message["Subject"] = "You've been invited to our Product Portfolio App"
    message.set_content(f"Hello {name}, {admin_name} invited you. Register in the app with {email}.")
    message.add_alternative(INVITE_TEMPLATE.format(name=name, admin_name=admin_name, email=email), subtype="html")
    return message


class Mailer:
    async def send_invite(self, email: str, name: str, admin_name: str):
        await aiosmtplib.send(
            build_invite(email, name, admin_name),
            hostname=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.EMAIL_USER or None,
            password=config.EMAIL_PASS or None,
            start_tls=True,
            timeout=15,
        )
        logger.info("Invite email sent to %s", email)
