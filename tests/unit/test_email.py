import smtplib
from unittest.mock import MagicMock

import pytest

from photobooth.core.exceptions import EmailDeliveryError
from photobooth.modules.email.service import EmailService, resolve_download_url
from tests.conftest import image_bytes


@pytest.mark.parametrize("user_image_url,frontend_url,expected", [
    ("https://cdn.test/a.jpg", "https://booth.test", "https://cdn.test/a.jpg"),
    ("/static/outputs/j_final.jpg", "https://booth.test/", "https://booth.test/static/outputs/j_final.jpg"),
    ("static/outputs/j_final.jpg", "https://booth.test", "https://booth.test/static/outputs/j_final.jpg"),
    ("/static/outputs/j_final.jpg", None, "cid:image-j@photobooth"),
])
def test_resolve_download_url(user_image_url, frontend_url, expected):
    assert resolve_download_url(user_image_url, "j", frontend_url) == expected


@pytest.fixture
def smtp():
    return MagicMock()


@pytest.fixture
def service(storage, smtp):
    factory = MagicMock()
    factory.return_value.__enter__.return_value = smtp
    return EmailService(
        storage,
        username="booth@example.com",
        password="secret",
        frontend_url="https://booth.test",
        smtp_factory=factory
    )


def test_sends_final_image_as_attachment(storage, service, smtp):
    storage.final_image_path("job-1").write_bytes(image_bytes((8, 8), (1, 2, 3)))

    service.send_image_email("fan@example.com", "job-1", "/static/outputs/job-1_final.jpg")

    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with("booth@example.com", "secret")
    message = smtp.send_message.call_args.args[0]
    assert message["To"] == "fan@example.com"
    assert message["Subject"] == "Your AI-Generated Photo"

    attachments = list(message.iter_attachments())
    assert [a.get_filename() for a in attachments] == ["job-1_final.jpg"]
    assert attachments[0]["Content-ID"] == "<image-job-1@photobooth>"

    html = message.get_body(preferencelist=("html",)).get_content()
    assert "https://booth.test/static/outputs/job-1_final.jpg" in html


def test_missing_final_image(service, smtp):
    with pytest.raises(EmailDeliveryError, match="Image file not found"):
        service.send_image_email("fan@example.com", "nope", "/static/outputs/nope_final.jpg")

    smtp.send_message.assert_not_called()


def test_smtp_failure(storage, service, smtp):
    storage.final_image_path("job-2").write_bytes(image_bytes((8, 8), (1, 2, 3)))
    smtp.send_message.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

    with pytest.raises(EmailDeliveryError, match="Failed to send email"):
        service.send_image_email("fan@example.com", "job-2", "/static/outputs/job-2_final.jpg")


def test_download_link_is_html_escaped(storage, service, smtp):
    storage.final_image_path("job-3").write_bytes(image_bytes((8, 8), (1, 2, 3)))

    service.send_image_email("fan@example.com", "job-3", 'https://cdn.test/a.jpg?x=1&y="><script>alert(1)</script>')

    html = smtp.send_message.call_args.args[0].get_body(preferencelist=("html",)).get_content()
    assert "<script>" not in html
    assert 'href="https://cdn.test/a.jpg?x=1&amp;y=&quot;&gt;&lt;script&gt;alert(1)&lt;/script&gt;"' in html
