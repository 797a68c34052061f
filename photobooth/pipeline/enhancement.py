"""
AI Enhancement Client

Sends the composited photo to the Gemini generative-image API and returns the
enhanced image bytes. The only pipeline stage with automatic retry.
"""

import io
import json
import base64
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import httpx
from PIL import Image

from photobooth.core.config import settings
from photobooth.core.exceptions import ExternalServiceError, ProcessingError
from photobooth.core.logging import get_logger
from photobooth.core.metrics import record_enhancement_call, track_stage_latency
from photobooth.core.retry import RetryExhaustedError, RetryPolicy, linear_backoff
from photobooth.modules.jobs.models import JobMode

logger = get_logger(__name__)


@dataclass(frozen=True)
class EnhancementPrompt:
    system_instruction: str
    prompt: str


PROMPTS: Dict[JobMode, EnhancementPrompt] = {
    JobMode.STADIUM: EnhancementPrompt(
        system_instruction=(
            "You are a photo retoucher for a cricket stadium photo booth. Keep the person's "
            "face, body, pose and clothing exactly as they are. Never add, remove or replace "
            "people, and never change the stadium backdrop's layout."
        ),
        prompt=(
            "Enhance this composited stadium photo: match the person's lighting and colour "
            "temperature to the floodlit stadium behind them, remove any green screen spill "
            "or fringing, smooth the cut-out edges, add a soft natural ground shadow and "
            "improve overall quality so it looks like a real photo taken in the stands."
        ),
    ),
    JobMode.CAPTAIN: EnhancementPrompt(
        system_instruction=(
            "You are a photo retoucher for a photo booth where fans pose next to team "
            "captains. Keep every person's identity, face, pose and clothing unchanged. "
            "Never add, remove or swap people."
        ),
        prompt=(
            "Enhance this composited photo so the fan looks like they are standing next to "
            "the captain: match lighting direction, contrast and colour grading between the "
            "fan and the scene, remove green screen artifacts, blend the edges and shadows "
            "naturally and improve overall photo quality to look professional and realistic."
        ),
    ),
}


class EnhancementAttemptError(Exception):
    """One enhancement attempt failed."""


def _iter_sse_events(response: httpx.Response) -> Iterator[Dict[str, Any]]:
    """Yield the JSON payload of each `data:` line of a server-sent event stream."""
    for line in response.iter_lines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            yield json.loads(data)
        except json.JSONDecodeError as e:
            raise EnhancementAttemptError(f"Malformed stream chunk from Gemini API: {e}")


def _iter_parts(chunk: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    for candidate in chunk.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            yield part


def _verify_image(data: bytes):
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
    except Exception as e:
        raise EnhancementAttemptError(f"Gemini returned data that is not a valid image: {e}")


class GeminiEnhancementClient:
    """
    Streaming client for Gemini image generation.

    Every attempt issues one `streamGenerateContent` request, collects all
    inline image parts across the streamed chunks and validates the result
    as an image. Failed attempts are retried by `retry_policy`.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.5-flash-image",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.Client] = None
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=3,
            backoff=linear_backoff(2.0)
        )
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls) -> "GeminiEnhancementClient":
        return cls(
            api_key=settings.GEMINI_API_KEY,
            model=settings.GEMINI_MODEL,
            base_url=settings.GEMINI_API_BASE_URL,
            timeout=settings.ENHANCEMENT_TIMEOUT_SECONDS,
            retry_policy=RetryPolicy(
                max_attempts=settings.ENHANCEMENT_MAX_ATTEMPTS,
                backoff=linear_backoff(settings.ENHANCEMENT_RETRY_DELAY_MS / 1000.0)
            )
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:streamGenerateContent"

    def build_request(self, image_bytes: bytes, mime_type: str, mode: JobMode) -> Dict[str, Any]:
        prompt = PROMPTS[JobMode(mode)]
        return {
            "systemInstruction": {"parts": [{"text": prompt.system_instruction}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": mime_type,
                                "data": base64.b64encode(image_bytes).decode("utf-8"),
                            }
                        },
                        {"text": prompt.prompt},
                    ],
                }
            ],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        }

    def enhance(self, composited_image_path: Union[str, Path], mode: JobMode) -> bytes:
        """
        Enhance a composited image.

        Raises:
            ProcessingError: the composited file cannot be read
            ExternalServiceError: every attempt failed
        """
        path = Path(composited_image_path)
        try:
            image_bytes = path.read_bytes()
        except OSError as e:
            raise ProcessingError(f"Failed to read composited image: {e}", stage="enhancement")

        mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
        body = self.build_request(image_bytes, mime_type, mode)

        logger.info("enhancement_starting", input_size=len(image_bytes), mode=JobMode(mode).value)

        with track_stage_latency("enhancement"):
            try:
                result = self.retry_policy.call(self._attempt, body, operation="gemini_enhance")
            except RetryExhaustedError as e:
                raise ExternalServiceError(
                    f"Gemini API call failed after {e.attempts} attempts: {e.last_error}",
                    attempts=e.attempts,
                    stage="enhancement"
                )

        logger.info("enhancement_completed", output_size=len(result))
        return result

    def _attempt(self, body: Dict[str, Any]) -> bytes:
        try:
            image = self._stream_image(body)
        except Exception:
            record_enhancement_call("error")
            raise
        record_enhancement_call("success")
        return image

    def _stream_image(self, body: Dict[str, Any]) -> bytes:
        if not self.api_key:
            raise EnhancementAttemptError("GEMINI_API_KEY is not configured")

        chunks: List[bytes] = []

        with self._client.stream(
            "POST",
            self.endpoint,
            params={"alt": "sse"},
            json=body,
            headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        ) as response:
            if response.status_code >= 400:
                response.read()
                raise EnhancementAttemptError(
                    f"Gemini API error {response.status_code}: {response.text[:500]}"
                )

            for chunk in _iter_sse_events(response):
                for part in _iter_parts(chunk):
                    inline = part.get("inlineData") or part.get("inline_data") or {}
                    if inline.get("data"):
                        chunks.append(base64.b64decode(inline["data"]))
                    elif part.get("text"):
                        logger.info("gemini_text_response", text=part["text"][:500])

        if not chunks:
            raise EnhancementAttemptError("No image data received from Gemini API")

        result = b"".join(chunks)
        _verify_image(result)
        return result

    def close(self):
        if self._owns_client:
            self._client.close()
