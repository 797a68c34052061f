"""
Photo Job Runner

Runs one job end to end: compositing, AI enhancement, persisting the final
image. Shared by the Celery worker and the in-process direct mode so both
execute exactly the same pipeline.
"""

import io
import time
from pathlib import Path
from typing import Optional

from PIL import Image

from photobooth.core.exceptions import PhotoboothError, ProcessingError
from photobooth.core.logging import LogContext, get_logger
from photobooth.core.metrics import record_job_completion, record_job_started
from photobooth.core.storage import LocalStorage, get_storage
from photobooth.modules.jobs.models import JobPayload, JobResult
from photobooth.pipeline.enhancement import GeminiEnhancementClient
from photobooth.pipeline.stages import ChromaKeyRange, CompositeConfig, ImageCompositor

logger = get_logger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class PhotoJobRunner:
    """Composite -> enhance -> persist, for one job at a time per call."""

    def __init__(self, storage: LocalStorage, compositor: ImageCompositor, enhancer):
        self.storage = storage
        self.compositor = compositor
        self.enhancer = enhancer

    @classmethod
    def from_settings(cls, storage: Optional[LocalStorage] = None) -> "PhotoJobRunner":
        storage = storage or get_storage()
        return cls(
            storage=storage,
            compositor=ImageCompositor(
                storage,
                chroma_key=ChromaKeyRange.from_settings(),
                composite_config=CompositeConfig.from_settings()
            ),
            enhancer=GeminiEnhancementClient.from_settings()
        )

    def run(self, payload: JobPayload) -> JobResult:
        """
        Execute the pipeline for `payload`.

        Raises:
            PhotoboothError: any stage failure; unexpected errors are wrapped
                in ProcessingError so the failure reason stays readable
        """
        with LogContext(job_id=payload.job_id):
            wall_start = time.time()
            start = time.perf_counter()
            timings = {}
            stage = "compositing"

            logger.info(
                "job_processing_started",
                mode=payload.mode.value,
                background_id=payload.background_id,
                queue_wait_ms=max(0, int((wall_start - payload.start_time) * 1000))
            )
            record_job_started()

            try:
                step = time.perf_counter()
                composited_path = self.compositor.process_image(
                    payload.job_id,
                    payload.input_image_path,
                    payload.mode,
                    payload.background_id
                )
                timings["compositing_ms"] = _elapsed_ms(step)

                stage = "enhancement"
                step = time.perf_counter()
                enhanced = self.enhancer.enhance(composited_path, payload.mode)
                timings["enhancement_ms"] = _elapsed_ms(step)

                stage = "persist"
                step = time.perf_counter()
                final_path = self.save_final_image(payload.job_id, enhanced)
                timings["persist_ms"] = _elapsed_ms(step)

            except Exception as e:
                record_job_completion("failed", time.perf_counter() - start, failure_stage=stage)
                logger.error(
                    "job_processing_failed",
                    failed_stage=stage,
                    error=str(e),
                    error_type=type(e).__name__,
                    total_ms=_elapsed_ms(start)
                )
                if isinstance(e, PhotoboothError):
                    raise
                raise ProcessingError(
                    f"Unexpected {stage} failure: {e}",
                    job_id=payload.job_id,
                    stage=stage
                ) from e

            record_job_completion("completed", time.perf_counter() - start)
            logger.info(
                "job_timing_summary",
                total_processing_ms=_elapsed_ms(start),
                total_request_ms=int((time.time() - payload.start_time) * 1000),
                **timings
            )

            return JobResult(result_image_path=str(final_path))

    def save_final_image(self, job_id: str, data: bytes) -> Path:
        """Re-encode the enhanced image as the job's final JPEG."""
        final_path = self.storage.final_image_path(job_id)
        try:
            with Image.open(io.BytesIO(data)) as image:
                final_path.parent.mkdir(parents=True, exist_ok=True)
                image.convert("RGB").save(final_path, format="JPEG", quality=95)
        except OSError as e:
            raise ProcessingError(f"Failed to save final image: {e}", job_id=job_id, stage="persist")
        return final_path

    def close(self):
        close = getattr(self.enhancer, "close", None)
        if close:
            close()
