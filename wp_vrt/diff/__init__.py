"""wp_vrt.diff: perceptual pixel comparison and site verdicts."""
from .comparator import SiteComparator, build_verdict
from .engine import DiffEngine, decode_png, encode_png, pad_to_canvas
from .pixelmatch import match

__all__ = [
    "DiffEngine",
    "SiteComparator",
    "build_verdict",
    "decode_png",
    "encode_png",
    "pad_to_canvas",
    "match",
]
