from pydantic import EmailStr, Field

from photobooth.modules.jobs.models import CamelModel


class EmailRequestDTO(CamelModel):
    """Request to email a finished photo."""
    email: EmailStr
    job_id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    user_image_url: str = Field(..., min_length=1)


class EmailResponseDTO(CamelModel):
    success: bool
    message: str
    job_id: str
    recipient_email: str
