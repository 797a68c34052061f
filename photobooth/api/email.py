"""
Email Endpoint

POST /api/email - Send a finished photo to the guest
"""

import asyncio

from fastapi import APIRouter, Depends

from photobooth.api.dependencies import get_email_service
from photobooth.modules.email.schemas import EmailRequestDTO, EmailResponseDTO
from photobooth.modules.email.service import EmailService

router = APIRouter()


@router.post("", response_model=EmailResponseDTO)
async def send_email(request: EmailRequestDTO, service: EmailService = Depends(get_email_service)):
    await asyncio.to_thread(service.send_image_email, request.email, request.job_id, request.user_image_url)

    return EmailResponseDTO(
        success=True,
        message="Email sent successfully",
        job_id=request.job_id,
        recipient_email=request.email
    )
