"""
Full-page capture of one discovered page in one phase.
"""
from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from PIL import Image
from playwright.async_api import Error as PlaywrightError

from wp_vrt.capture.masking import mask_page
from wp_vrt.capture.pool import BrowserContextPool
from wp_vrt.capture.stabilizer import PageStabilizer, StabilizerTimeouts
from wp_vrt.config import CaptureSettings
from wp_vrt.errors import CaptureError, NavigationError
from wp_vrt.models import Capture, PageRecord, Phase, Viewport, utcnow
from wp_vrt.storage import ArtifactStore, capture_key

__all__ = ("VIEWPORT_PRESETS", "PageCapturer", "ViewportCapture", "capture_many_viewports")

logger = logging.getLogger("WPVRT.capture")

VIEWPORT_PRESETS: Dict[str, Viewport] = {
    "desktop": Viewport(1920, 1080, "desktop"),
    "tablet": Viewport(768, 1024, "tablet"),
    "mobile": Viewport(375, 667, "mobile"),
}


class PageCapturer:
    """Captures pages through a context pool and stores the PNG bytes.

    Each capture opens a fresh page in a pooled context, stabilizes it,
    masks volatile content, and screenshots the full page. The stored key is
    ``{phase}/{date}/{site_id}/{page_id}.png``; re-captures overwrite.
    """

    def __init__(
        self,
        pool: BrowserContextPool,
        store: ArtifactStore,
        settings: Optional[CaptureSettings] = None,
        *,
        stabilizer: Optional[PageStabilizer] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.pool = pool
        self.store = store
        self.settings = settings or CaptureSettings()
        self.stabilizer = stabilizer or PageStabilizer(StabilizerTimeouts.from_settings(self.settings))
        self._clock = clock

    @property
    def default_viewport(self) -> Viewport:
        return Viewport(self.settings.viewport_width, self.settings.viewport_height)

    async def capture(
        self,
        site_id: str,
        page: PageRecord,
        phase: Phase,
        date: str,
        viewport: Optional[Viewport] = None,
        *,
        page_id: Optional[str] = None,
    ) -> Capture:
        viewport = viewport or self.default_viewport
        page_id = page_id or page.page_id
        logger.info("Capturing %s %s [%s] %s", phase.value, page.url, viewport.label, site_id)

        context = await self.pool.acquire()
        try:
            tab = await context.new_page()
        except PlaywrightError as exc:
            await self.pool.discard(context)
            raise CaptureError(f"browser context unusable for {page.url}", cause=exc) from exc
        except BaseException:
            await self.pool.release(context)
            raise

        try:
            await tab.set_viewport_size({"width": viewport.width, "height": viewport.height})
            await self.stabilizer.stabilize(tab, page.url)
            await mask_page(tab)
            image = await tab.screenshot(full_page=True, type="png")
        except NavigationError as exc:
            raise CaptureError(f"navigation failed for {page.url}", cause=exc) from exc
        except PlaywrightError as exc:
            raise CaptureError(f"screenshot failed for {page.url}", cause=exc) from exc
        finally:
            try:
                await tab.close()
            except PlaywrightError as exc:
                logger.debug("Closing page failed: %s", exc)
            await self.pool.release(context)

        width, height = await asyncio.to_thread(_image_size, image)
        key = capture_key(phase, date, site_id, page_id)
        await asyncio.to_thread(self.store.put, key, image)
        logger.debug("Stored %s (%dx%d)", key, width, height)
        return Capture(
            site_id=site_id,
            page_id=page_id,
            phase=phase,
            image=image,
            width=width,
            height=height,
            captured_at=self._clock(),
            url=page.url,
        )


def _image_size(data: bytes) -> tuple[int, int]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except OSError as exc:
        raise CaptureError("screenshot is not a readable image", cause=exc) from exc


@dataclass(slots=True)
class ViewportCapture:
    viewport: Viewport
    capture: Optional[Capture] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.capture is not None


async def capture_many_viewports(
    capturer: PageCapturer,
    site_id: str,
    page: PageRecord,
    phase: Phase,
    date: str,
    viewports: Optional[Iterable[Viewport]] = None,
) -> List[ViewportCapture]:
    """Capture *page* once per viewport; failures are recorded, not raised.

    Captures are stored under ``{page_id}@{viewport label}`` so that every
    viewport pairs with its own counterpart in the other phase.
    """
    results: List[ViewportCapture] = []
    for viewport in viewports or VIEWPORT_PRESETS.values():
        try:
            shot = await capturer.capture(
                site_id, page, phase, date, viewport, page_id=f"{page.page_id}@{viewport.label}"
            )
            results.append(ViewportCapture(viewport, capture=shot))
        except CaptureError as exc:
            logger.error("Failed to capture %s [%s]: %s", page.url, viewport.label, exc)
            results.append(ViewportCapture(viewport, error=str(exc)))
    return results
