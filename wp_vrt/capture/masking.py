"""
Noise suppression applied right before the raster capture.
"""
from __future__ import annotations

from typing import Any

__all__ = (
    "STABILIZE_CSS",
    "TIMESTAMP_PATTERN",
    "TIMESTAMP_PLACEHOLDER",
    "TIMESTAMP_SELECTORS",
    "mask_page",
)

STABILIZE_CSS = """
*, *::before, *::after {
    animation: none !important;
    animation-duration: 0s !important;
    transition: none !important;
    transition-duration: 0s !important;
    caret-color: transparent !important;
    scroll-behavior: auto !important;
}
* {
    scrollbar-width: none !important;
    -ms-overflow-style: none !important;
}
*::-webkit-scrollbar {
    display: none !important;
}
.cookie-banner,
.gdpr-banner,
.notification-bar,
[id*="cookie"],
[class*="cookie"],
[id*="notification"],
[class*="notification"] {
    display: none !important;
}
"""

TIMESTAMP_PATTERN = r"\d{4}[-/]\d{2}[-/]\d{2}|\d{2}:\d{2}"
TIMESTAMP_PLACEHOLDER = "TIMESTAMP_PLACEHOLDER"
TIMESTAMP_SELECTORS = '[class*="time"], [class*="date"], [id*="time"], [id*="date"], time'

_MASK_TIMESTAMPS_JS = """([selectors, pattern, placeholder]) => {
    const re = new RegExp(pattern);
    let masked = 0;
    document.querySelectorAll(selectors).forEach((el) => {
        if (el.textContent && re.test(el.textContent)) {
            el.textContent = placeholder;
            masked += 1;
        }
    });
    return masked;
}"""


async def mask_page(page: Any) -> int:
    """Inject the stabilizing stylesheet and mask timestamp-like elements.

    Returns the number of elements whose text was replaced.
    """
    await page.add_style_tag(content=STABILIZE_CSS)
    masked = await page.evaluate(
        _MASK_TIMESTAMPS_JS, [TIMESTAMP_SELECTORS, TIMESTAMP_PATTERN, TIMESTAMP_PLACEHOLDER]
    )
    return int(masked or 0)
