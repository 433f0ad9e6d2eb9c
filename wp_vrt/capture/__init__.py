"""wp_vrt.capture: settled full-page captures through pooled browser contexts."""
from .capturer import VIEWPORT_PRESETS, PageCapturer, ViewportCapture, capture_many_viewports
from .masking import STABILIZE_CSS, TIMESTAMP_PATTERN, TIMESTAMP_PLACEHOLDER, mask_page
from .pool import BrowserContextPool, launch_pool
from .stabilizer import (
    LOADER_SELECTORS,
    PageStabilizer,
    StabilizationReport,
    StabilizerState,
    StabilizerTimeouts,
)

__all__ = [
    "VIEWPORT_PRESETS",
    "PageCapturer",
    "ViewportCapture",
    "capture_many_viewports",
    "STABILIZE_CSS",
    "TIMESTAMP_PATTERN",
    "TIMESTAMP_PLACEHOLDER",
    "mask_page",
    "BrowserContextPool",
    "launch_pool",
    "LOADER_SELECTORS",
    "PageStabilizer",
    "StabilizationReport",
    "StabilizerState",
    "StabilizerTimeouts",
]
