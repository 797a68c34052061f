"""
Storage Layout

Every file a job touches is addressed deterministically by its job id and a
stage suffix, so concurrent jobs never share a path:

    uploads/raw/{job_id}.jpg                  raw upload
    uploads/foregrounds/{job_id}.png          chroma-keyed foreground
    uploads/outputs/{job_id}_composited.png   foreground over backdrop
    uploads/outputs/{job_id}_final.jpg        AI-enhanced result

Backdrops live in a read-only catalog:

    assets/backgrounds/{stadium|captains}/{background_id}.{jpg|jpeg|png}
"""

from pathlib import Path
from typing import Optional, Tuple, Union

from photobooth.core.config import settings
from photobooth.modules.jobs.models import JobMode

# Resolution order for backdrop files; the first existing file wins
BACKGROUND_EXTENSIONS: Tuple[str, ...] = (".jpg", ".jpeg", ".png")

BACKGROUND_DIRS = {
    JobMode.STADIUM: "stadium",
    JobMode.CAPTAIN: "captains",
}

STATIC_URL_PREFIX = "/static"


class LocalStorage:
    """Local filesystem layout for job artifacts and the backdrop catalog."""

    def __init__(self, uploads_dir: Union[str, Path], assets_dir: Union[str, Path]):
        self.uploads_dir = Path(uploads_dir)
        self.assets_dir = Path(assets_dir)

    @property
    def raw_dir(self) -> Path:
        return self.uploads_dir / "raw"

    @property
    def foregrounds_dir(self) -> Path:
        return self.uploads_dir / "foregrounds"

    @property
    def outputs_dir(self) -> Path:
        return self.uploads_dir / "outputs"

    def ensure_directories(self):
        """Create the upload directories if they don't exist."""
        for directory in (self.raw_dir, self.foregrounds_dir, self.outputs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # -------------------------------------------------------------------------
    # Job artifacts
    # -------------------------------------------------------------------------

    def raw_image_path(self, job_id: str) -> Path:
        return self.raw_dir / f"{job_id}.jpg"

    def foreground_path(self, job_id: str) -> Path:
        return self.foregrounds_dir / f"{job_id}.png"

    def composited_path(self, job_id: str) -> Path:
        return self.outputs_dir / f"{job_id}_composited.png"

    def final_image_path(self, job_id: str) -> Path:
        return self.outputs_dir / f"{job_id}_final.jpg"

    def static_image_url(self, job_id: str) -> str:
        """Public URL of a completed job's final image."""
        return f"{STATIC_URL_PREFIX}/outputs/{job_id}_final.jpg"

    def save_upload(self, job_id: str, data: bytes) -> Path:
        """Write the raw upload for a job and return its path."""
        path = self.raw_image_path(job_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    # -------------------------------------------------------------------------
    # Backdrop catalog
    # -------------------------------------------------------------------------

    def backgrounds_dir(self, mode: JobMode) -> Path:
        return self.assets_dir / "backgrounds" / BACKGROUND_DIRS[JobMode(mode)]

    def resolve_background_path(self, mode: JobMode, background_id: str) -> Path:
        """
        Find the backdrop file for a background id.

        Tries BACKGROUND_EXTENSIONS in order and returns the first file that
        exists. When none exists, returns the default `.jpg` path so the caller
        reports a deterministic missing file instead of failing here.
        """
        base_dir = self.backgrounds_dir(mode)
        for ext in BACKGROUND_EXTENSIONS:
            candidate = base_dir / f"{background_id}{ext}"
            if candidate.is_file():
                return candidate
        return base_dir / f"{background_id}{BACKGROUND_EXTENSIONS[0]}"


class StorageFactory:
    """Factory for the process-wide storage layout."""

    _instance: Optional[LocalStorage] = None

    @classmethod
    def get_storage(cls) -> LocalStorage:
        if cls._instance is None:
            cls._instance = LocalStorage(
                uploads_dir=settings.UPLOADS_DIR,
                assets_dir=settings.ASSETS_DIR
            )
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> LocalStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
