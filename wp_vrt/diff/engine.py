"""
Diff engine: turns a baseline/after capture pair into a ComparisonResult.
"""
from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from wp_vrt.config import DiffSettings
from wp_vrt.diff import pixelmatch
from wp_vrt.errors import CorruptedImage
from wp_vrt.models import Capture, ComparisonResult, ComparisonStatus

__all__ = ("DiffEngine", "PAD_COLOR", "decode_png", "encode_png", "pad_to_canvas")

logger = logging.getLogger("WPVRT.diff")

PAD_COLOR = (255, 255, 255, 255)


def decode_png(data: bytes, label: str = "image") -> np.ndarray:
    """Decode image bytes into an RGBA uint8 array, raising CorruptedImage."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return np.asarray(img.convert("RGBA"), dtype=np.uint8)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise CorruptedImage(f"cannot decode {label}", cause=exc) from exc


def encode_png(rgba: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(rgba, mode="RGBA").save(buf, format="PNG", optimize=False)
    return buf.getvalue()


def pad_to_canvas(rgba: np.ndarray, width: int, height: int) -> np.ndarray:
    """Place *rgba* at the top-left of a ``width x height`` PAD_COLOR canvas."""
    h, w = rgba.shape[:2]
    if (w, h) == (width, height):
        return rgba
    canvas = np.empty((height, width, 4), dtype=np.uint8)
    canvas[...] = PAD_COLOR
    canvas[:h, :w] = rgba
    return canvas


class DiffEngine:
    """Compares capture pairs with the perceptual pixel comparator.

    Size policy ``"pad"`` normalises both images to a shared canvas of the
    larger width and height; ``"strict"`` reports ``DIMENSION_MISMATCH``
    without comparing.
    """

    def __init__(self, settings: Optional[DiffSettings] = None) -> None:
        self.settings = settings or DiffSettings()

    def compare(
        self,
        baseline: Optional[Capture],
        after: Optional[Capture],
        threshold: Optional[float] = None,
        *,
        page_id: Optional[str] = None,
    ) -> ComparisonResult:
        threshold = self.settings.threshold if threshold is None else threshold
        pid = page_id or (baseline.page_id if baseline else after.page_id if after else "")

        if baseline is None or after is None:
            kind = "MissingBaseline" if baseline is None else "MissingAfter"
            missing = "baseline" if baseline is None else "after"
            logger.info("%s: %s capture missing", pid, missing)
            return ComparisonResult(
                page_id=pid,
                status=ComparisonStatus.MISSING_AFTER,
                threshold=threshold,
                error=f"{missing} screenshot not found",
                error_kind=kind,
            )
        return self.compare_bytes(baseline.image, after.image, threshold, page_id=pid)

    def compare_bytes(
        self,
        baseline_png: bytes,
        after_png: bytes,
        threshold: Optional[float] = None,
        *,
        page_id: str = "",
    ) -> ComparisonResult:
        threshold = self.settings.threshold if threshold is None else threshold
        try:
            img1 = decode_png(baseline_png, "baseline")
            img2 = decode_png(after_png, "after")
        except CorruptedImage as exc:
            logger.error("%s: %s", page_id, exc)
            return ComparisonResult(
                page_id=page_id,
                status=ComparisonStatus.ERROR,
                threshold=threshold,
                error=str(exc),
                error_kind=exc.kind,
            )

        (h1, w1), (h2, w2) = img1.shape[:2], img2.shape[:2]
        if (w1, h1) != (w2, h2) and self.settings.size_mismatch == "strict":
            logger.info("%s: dimension mismatch %dx%d vs %dx%d", page_id, w1, h1, w2, h2)
            return ComparisonResult(
                page_id=page_id,
                status=ComparisonStatus.DIMENSION_MISMATCH,
                threshold=threshold,
                width=max(w1, w2),
                height=max(h1, h2),
                error=f"image dimensions don't match: {w1}x{h1} vs {w2}x{h2}",
                error_kind="DimensionMismatch",
            )

        width, height = max(w1, w2), max(h1, h2)
        diff_pixels, diff_rgba = pixelmatch.match(
            pad_to_canvas(img1, width, height),
            pad_to_canvas(img2, width, height),
            threshold=self.settings.pixel_threshold,
            alpha=self.settings.alpha,
        )
        total = width * height
        percentage = diff_pixels / total * 100 if total else 0.0
        status = ComparisonStatus.NG if percentage > threshold else ComparisonStatus.OK
        logger.debug("%s: %.3f%% diff (%s)", page_id, percentage, status.value)
        return ComparisonResult(
            page_id=page_id,
            status=status,
            threshold=threshold,
            diff_percentage=percentage,
            diff_pixel_count=diff_pixels,
            diff_image=encode_png(diff_rgba),
            width=width,
            height=height,
        )

    def compare_files(
        self,
        baseline_path: Union[str, Path],
        after_path: Union[str, Path],
        threshold: Optional[float] = None,
    ) -> Tuple[ComparisonResult, Path, Path]:
        """Compare two image files on disk (CLI helper)."""
        a, b = Path(baseline_path), Path(after_path)
        result = self.compare_bytes(a.read_bytes(), b.read_bytes(), threshold, page_id=a.stem)
        return result, a, b
