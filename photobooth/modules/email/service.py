"""
Email Delivery

Sends a finished photo to the guest over SMTP (STARTTLS), with the final
JPEG attached and a download button in the HTML body.
"""

import html
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Callable, Optional

from photobooth.core.config import settings
from photobooth.core.exceptions import EmailDeliveryError
from photobooth.core.logging import get_logger
from photobooth.core.storage import LocalStorage

logger = get_logger(__name__)

EMAIL_SUBJECT = "Your AI-Generated Photo"
SENDER_NAME = "IND vs SA"
DEFAULT_SENDER_ADDRESS = "photobooth@localhost"

EMAIL_TEMPLATE = """\
<div style="margin:0; padding:0; background:#f5f5f5; width:100%; font-family: Arial, sans-serif;">
  <table width="100%" cellpadding="0" cellspacing="0" border="0" style="background:#f5f5f5; padding:20px 0;">
    <tr>
      <td align="center">
        <table width="600" cellpadding="0" cellspacing="0" border="0"
               style="background:#ffffff; border-radius:10px; overflow:hidden;">
          <tr>
            <td style="padding: 30px 40px; text-align:center;">
              <h2 style="margin:0; font-size:24px; color:#081856; font-weight:700;">
                Your AI-Generated Photo Is Ready!
              </h2>
              <p style="margin:15px 0 25px; font-size:16px; color:#444444; line-height:1.6;">
                Thank you for visiting the <strong>India vs South Africa</strong> Photo Booth. <br>
                Your personalized AI-generated image is attached below.
              </p>
              <a href="{download_url}"
                 style="background:#EE623E; color:#ffffff; text-decoration:none; padding:14px 28px;
                        font-size:16px; border-radius:6px; display:inline-block; font-weight:bold;">
                Download Image
              </a>
            </td>
          </tr>
          <tr>
            <td style="padding: 0 40px 30px; text-align:center;">
              <p style="margin:0; font-size:12px; color:#999999;">
                Photo Booth Experience<br>
                &copy; {year} All Rights Reserved.
              </p>
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</div>
"""


def image_content_id(job_id: str) -> str:
    return f"image-{job_id}@photobooth"


def resolve_download_url(user_image_url: str, job_id: str, frontend_url: Optional[str]) -> str:
    """
    Link for the download button.

    Absolute URLs are used as-is, relative ones are joined to the frontend
    URL. With neither, the button points at the attached image.
    """
    if user_image_url.startswith(("http://", "https://")):
        return user_image_url
    if frontend_url:
        relative = user_image_url if user_image_url.startswith("/") else f"/{user_image_url}"
        return f"{frontend_url.rstrip('/')}{relative}"
    return f"cid:{image_content_id(job_id)}"


class EmailService:
    """SMTP sender for finished photos."""

    def __init__(
        self,
        storage: LocalStorage,
        host: str = "smtp.gmail.com",
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        frontend_url: Optional[str] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP
    ):
        self.storage = storage
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.frontend_url = frontend_url
        self.smtp_factory = smtp_factory

    @classmethod
    def from_settings(cls, storage: LocalStorage) -> "EmailService":
        return cls(
            storage,
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.EMAIL_USER,
            password=settings.EMAIL_PASS,
            frontend_url=settings.FRONTEND_URL
        )

    def build_message(self, to: str, job_id: str, user_image_url: str) -> EmailMessage:
        image_path = self.storage.final_image_path(job_id)
        if not image_path.is_file():
            raise EmailDeliveryError(f"Image file not found: {image_path}", job_id=job_id)

        download_url = html.escape(resolve_download_url(user_image_url, job_id, self.frontend_url), quote=True)

        message = EmailMessage()
        message["From"] = f'"{SENDER_NAME}" <{self.username or DEFAULT_SENDER_ADDRESS}>'
        message["To"] = to
        message["Subject"] = EMAIL_SUBJECT
        message.set_content("Your AI-generated photo is attached.")
        message.add_alternative(
            EMAIL_TEMPLATE.format(download_url=download_url, year=datetime.now(timezone.utc).year),
            subtype="html"
        )
        message.add_attachment(
            image_path.read_bytes(),
            maintype="image",
            subtype="jpeg",
            filename=image_path.name,
            cid=f"<{image_content_id(job_id)}>"
        )
        return message

    def send_image_email(self, to: str, job_id: str, user_image_url: str):
        """
        Email the final image of `job_id` to `to`.

        Raises:
            EmailDeliveryError: final image missing or SMTP failure
        """
        message = self.build_message(to, job_id, user_image_url)

        try:
            with self.smtp_factory(self.host, self.port, timeout=30) as smtp:
                smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", job_id=job_id, error=str(e))
            raise EmailDeliveryError(f"Failed to send email: {e}", job_id=job_id)

        logger.info("email_sent", job_id=job_id, recipient=to)
