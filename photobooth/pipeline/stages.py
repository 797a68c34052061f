"""
Image Compositing Stages

Pure file-in/file-out steps:
1. Chroma-key removal - green pixels become fully transparent
2. Compositing - the keyed foreground is placed over a catalog backdrop

Neither stage retries; any I/O or decode failure aborts the job.
"""

import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import numpy as np
from PIL import Image

from photobooth.core.config import settings
from photobooth.core.exceptions import AssetNotFoundError, DecodeError, ProcessingError
from photobooth.core.logging import get_logger, with_logging
from photobooth.core.metrics import track_stage_latency
from photobooth.core.storage import LocalStorage
from photobooth.modules.jobs.models import JobMode

logger = get_logger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class ChromaKeyRange:
    """Inclusive per-channel bounds of the green box."""
    r_min: int = 0
    r_max: int = 100
    g_min: int = 120
    g_max: int = 255
    b_min: int = 0
    b_max: int = 120

    @classmethod
    def from_settings(cls) -> "ChromaKeyRange":
        return cls(
            r_min=settings.CHROMA_R_MIN,
            r_max=settings.CHROMA_R_MAX,
            g_min=settings.CHROMA_G_MIN,
            g_max=settings.CHROMA_G_MAX,
            b_min=settings.CHROMA_B_MIN,
            b_max=settings.CHROMA_B_MAX,
        )

    def mask(self, rgba: np.ndarray) -> np.ndarray:
        """Boolean mask of the pixels inside the box."""
        r, g, b = rgba[..., 0], rgba[..., 1], rgba[..., 2]
        return (
            (r >= self.r_min) & (r <= self.r_max)
            & (g >= self.g_min) & (g <= self.g_max)
            & (b >= self.b_min) & (b <= self.b_max)
        )


@dataclass(frozen=True)
class CompositeConfig:
    """
    Foreground placement over the backdrop.

    x == 0 centers horizontally; y == 0 anchors the foreground `bottom_margin`
    pixels above the bottom edge. Any other value is a verbatim pixel offset.
    """
    x: int = 0
    y: int = 0
    scale: float = 1.0
    bottom_margin: int = 50

    @classmethod
    def from_settings(cls) -> "CompositeConfig":
        return cls(
            x=settings.COMPOSITE_X,
            y=settings.COMPOSITE_Y,
            scale=settings.COMPOSITE_SCALE,
            bottom_margin=settings.COMPOSITE_BOTTOM_MARGIN,
        )


@dataclass(frozen=True)
class Placement:
    left: int
    top: int
    width: int
    height: int


def _load_image(path: PathLike, label: str, mode: str) -> Image.Image:
    """Decode an image fully into memory, converted to `mode`."""
    path = Path(path)
    if not path.is_file():
        raise ProcessingError(f"{label.capitalize()} image not found: {path}", stage=label)

    try:
        with Image.open(path) as image:
            image.load()
            converted = image.convert(mode)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Failed to decode {label} image {path.name}: {e}", stage=label)

    width, height = converted.size
    if not width or not height:
        raise DecodeError(f"Failed to get {label} dimensions", stage=label)
    return converted


@with_logging("chroma_key")
def remove_green_screen(
    input_path: PathLike,
    output_path: PathLike,
    key: ChromaKeyRange = ChromaKeyRange()
) -> Path:
    """
    Make every pixel inside the green box fully transparent.

    Pixels outside the box keep all four channels bit-for-bit. The output is
    always an RGBA PNG, even when the source had no alpha channel.
    """
    rgba = np.array(_load_image(input_path, "input", "RGBA"))

    mask = key.mask(rgba)
    rgba[mask, 3] = 0

    output_path = Path(output_path)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        Image.fromarray(rgba).save(output_path, format="PNG")
    except OSError as e:
        raise ProcessingError(f"Failed to write foreground image: {e}", stage="chroma_key")

    logger.info(
        "green_screen_removed",
        keyed_pixels=int(mask.sum()),
        total_pixels=int(mask.size)
    )
    return output_path


def compute_placement(
    background_size: Tuple[int, int],
    foreground_size: Tuple[int, int],
    config: CompositeConfig = CompositeConfig()
) -> Placement:
    """Where the (scaled) foreground lands on the background. Offsets never go negative."""
    bg_width, bg_height = background_size
    fg_width, fg_height = foreground_size

    width, height = fg_width, fg_height
    if config.scale != 1.0:
        width = max(1, math.floor(fg_width * config.scale))
        height = max(1, math.floor(fg_height * config.scale))

    left = config.x
    if left == 0:
        left = (bg_width - width) // 2

    top = config.y
    if top == 0:
        top = bg_height - height - config.bottom_margin

    return Placement(left=max(0, left), top=max(0, top), width=width, height=height)


class ImageCompositor:
    """Chroma-key removal plus backdrop compositing for one job."""

    def __init__(
        self,
        storage: LocalStorage,
        chroma_key: ChromaKeyRange = ChromaKeyRange(),
        composite_config: CompositeConfig = CompositeConfig()
    ):
        self.storage = storage
        self.chroma_key = chroma_key
        self.composite_config = composite_config

    def process_image(
        self,
        job_id: str,
        input_image_path: PathLike,
        mode: JobMode,
        background_id: str
    ) -> Path:
        """
        Key out the green screen and composite the result onto the backdrop.

        Returns:
            Path of the composited PNG

        Raises:
            AssetNotFoundError: no backdrop file for `background_id`
            DecodeError: an image cannot be decoded
            ProcessingError: any other I/O failure
        """
        with track_stage_latency("compositing"):
            step_start = time.perf_counter()

            foreground_path = remove_green_screen(
                input_image_path,
                self.storage.foreground_path(job_id),
                self.chroma_key
            )
            keyed_ms = int((time.perf_counter() - step_start) * 1000)

            background_path = self.storage.resolve_background_path(mode, background_id)
            if not background_path.is_file():
                raise AssetNotFoundError(
                    f"Background image not found: {background_path}",
                    job_id=job_id,
                    stage="compositing"
                )

            background = _load_image(background_path, "background", "RGB")
            foreground = _load_image(foreground_path, "foreground", "RGBA")

            placement = compute_placement(background.size, foreground.size, self.composite_config)
            if (placement.width, placement.height) != foreground.size:
                foreground = foreground.resize(
                    (placement.width, placement.height),
                    Image.Resampling.LANCZOS
                )

            background.paste(foreground, (placement.left, placement.top), foreground)

            composited_path = self.storage.composited_path(job_id)
            try:
                composited_path.parent.mkdir(parents=True, exist_ok=True)
                background.save(composited_path, format="PNG")
            except OSError as e:
                raise ProcessingError(
                    f"Failed to write composited image: {e}",
                    job_id=job_id,
                    stage="compositing"
                )

            logger.info(
                "compositing_completed",
                background=background_path.name,
                left=placement.left,
                top=placement.top,
                foreground_size=(placement.width, placement.height),
                chroma_key_ms=keyed_ms,
                duration_ms=int((time.perf_counter() - step_start) * 1000)
            )

        return composited_path
