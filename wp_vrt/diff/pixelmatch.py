"""
Perceptual per-pixel image comparison.

Vectorised numpy implementation of the YIQ colour-distance comparator used by
pixelmatch (Kotsarenko & Ramos, "Measuring perceived color difference using
YIQ NTSC transmission color space"), with its antialiasing detector
(Vysniauskas, "Anti-aliased pixel and intensity slope detector"). Pixels
judged to be antialiasing are never counted as differences.

Both inputs must be RGBA ``uint8`` arrays of identical shape ``(h, w, 4)``.
"""
from __future__ import annotations

from typing import Tuple

import numpy as np

__all__ = ("MAX_YIQ_DELTA", "DIFF_COLOR", "AA_COLOR", "match")

# squared YIQ distance between black and white
MAX_YIQ_DELTA = 35215.0
DIFF_COLOR = (255, 0, 0)
AA_COLOR = (255, 255, 0)

# neighbour offsets in scan order: x outer, y inner
_DX = np.array([-1, -1, -1, 0, 0, 1, 1, 1])
_DY = np.array([-1, 0, 1, -1, 1, -1, 0, 1])


def _blend(channel: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    return 255.0 + (channel - 255.0) * alpha


def _rgb2y(r, g, b):
    return r * 0.29889531 + g * 0.58662247 + b * 0.11448223


def _rgb2i(r, g, b):
    return r * 0.59597799 - g * 0.27417610 - b * 0.32180189


def _rgb2q(r, g, b):
    return r * 0.21147017 - g * 0.52261711 + b * 0.31114694


def _blended_rgb(img: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    rgba = img.astype(np.float32)
    alpha = rgba[..., 3] / 255.0
    return _blend(rgba[..., 0], alpha), _blend(rgba[..., 1], alpha), _blend(rgba[..., 2], alpha)


def _neighbours(ys: np.ndarray, xs: np.ndarray, h: int, w: int):
    ny = ys[None, :] + _DY[:, None]
    nx = xs[None, :] + _DX[:, None]
    valid = (nx >= 0) & (nx < w) & (ny >= 0) & (ny < h)
    return np.clip(ny, 0, h - 1), np.clip(nx, 0, w - 1), valid


def _on_edge(ys: np.ndarray, xs: np.ndarray, h: int, w: int) -> np.ndarray:
    return (xs == 0) | (xs == w - 1) | (ys == 0) | (ys == h - 1)


def _many_siblings(img: np.ndarray, ys: np.ndarray, xs: np.ndarray) -> np.ndarray:
    """More than two neighbours share the exact RGBA value (edges count as one)."""
    h, w = img.shape[:2]
    ny, nx, valid = _neighbours(ys, xs, h, w)
    centre = img[ys, xs]
    equal = np.all(img[ny, nx] == centre[None, :, :], axis=-1) & valid
    return (_on_edge(ys, xs, h, w).astype(np.int32) + equal.sum(axis=0)) > 2


def _antialiased(
    img: np.ndarray,
    luma: np.ndarray,
    other: np.ndarray,
    ys: np.ndarray,
    xs: np.ndarray,
) -> np.ndarray:
    h, w = img.shape[:2]
    ny, nx, valid = _neighbours(ys, xs, h, w)
    delta = luma[ys, xs][None, :] - luma[ny, nx]

    zeroes = _on_edge(ys, xs, h, w).astype(np.int32) + ((delta == 0) & valid).sum(axis=0)
    darker = np.where(valid & (delta < 0), delta, 0.0)
    brighter = np.where(valid & (delta > 0), delta, 0.0)
    lo = darker.min(axis=0)
    hi = brighter.max(axis=0)
    possible = (zeroes <= 2) & (lo != 0) & (hi != 0)
    if not possible.any():
        return possible

    cols = np.arange(ys.size)
    i_lo = darker.argmin(axis=0)
    i_hi = brighter.argmax(axis=0)
    lo_y, lo_x = ny[i_lo, cols], nx[i_lo, cols]
    hi_y, hi_x = ny[i_hi, cols], nx[i_hi, cols]

    via_lo = _many_siblings(img, lo_y, lo_x) & _many_siblings(other, lo_y, lo_x)
    via_hi = _many_siblings(img, hi_y, hi_x) & _many_siblings(other, hi_y, hi_x)
    return possible & (via_lo | via_hi)


def match(
    img1: np.ndarray,
    img2: np.ndarray,
    *,
    threshold: float = 0.1,
    alpha: float = 0.1,
) -> Tuple[int, np.ndarray]:
    """Count differing pixels and render the diff image.

    Returns ``(diff_pixels, diff_rgba)``. Differing pixels are red,
    antialiasing pixels yellow (not counted), everything else a faded
    grayscale copy of *img1*.
    """
    if img1.shape != img2.shape or img1.ndim != 3 or img1.shape[2] != 4:
        raise ValueError(f"image shapes differ or are not RGBA: {img1.shape} vs {img2.shape}")
    h, w = img1.shape[:2]

    raw = img1.astype(np.float32)
    grey = _blend(_rgb2y(raw[..., 0], raw[..., 1], raw[..., 2]), alpha * raw[..., 3] / 255.0)
    out = np.empty((h, w, 4), dtype=np.uint8)
    out[..., :3] = np.clip(grey, 0, 255).astype(np.uint8)[..., None]
    out[..., 3] = 255

    if np.array_equal(img1, img2):
        return 0, out

    r1, g1, b1 = _blended_rgb(img1)
    r2, g2, b2 = _blended_rgb(img2)
    y1, y2 = _rgb2y(r1, g1, b1), _rgb2y(r2, g2, b2)
    di = _rgb2i(r1, g1, b1) - _rgb2i(r2, g2, b2)
    dq = _rgb2q(r1, g1, b1) - _rgb2q(r2, g2, b2)
    delta = 0.5053 * (y1 - y2) ** 2 + 0.299 * di ** 2 + 0.1957 * dq ** 2

    ys, xs = np.nonzero(delta > MAX_YIQ_DELTA * threshold * threshold)
    if ys.size == 0:
        return 0, out

    aa = _antialiased(img1, y1, img2, ys, xs) | _antialiased(img2, y2, img1, ys, xs)
    out[ys[aa], xs[aa], :3] = AA_COLOR
    real = ~aa
    out[ys[real], xs[real], :3] = DIFF_COLOR
    return int(real.sum()), out
