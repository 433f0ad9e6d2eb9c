# File: tests/conftest.py
import io
from typing import Dict, List, Optional

import pytest
from PIL import Image

from wp_vrt.config import VRTConfig
from wp_vrt.models import Capture, HealthCheckResult, PageRecord, Phase, RollbackResult, UpdateResult
from wp_vrt.storage import LocalArtifactStore, capture_key


def png_bytes(width: int = 40, height: int = 30, color=(255, 255, 255, 255), box=None) -> bytes:
    """
    Build a PNG in memory. *box* = (x0, y0, x1, y1, rgba) paints a rectangle.
    """
    img = Image.new("RGBA", (width, height), color)
    if box is not None:
        x0, y0, x1, y1, fill = box
        for x in range(x0, x1):
            for y in range(y0, y1):
                img.putpixel((x, y), fill)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture()
def store(tmp_path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture()
def vrt_config(tmp_path) -> VRTConfig:
    """
    A small valid configuration: one wp-cli site, fast timeouts.
    """
    return VRTConfig(
        sites=[
            {"id": "blog", "url": "http://blog.example.com", "update_method": "wp-cli", "install_path": "/var/www"},
        ],
        capture={"capture_timeout": 5.0, "settle_delay": 0, "scroll_step_delay": 0},
        concurrency={"max_concurrent_pages": 2, "min_workers": 1, "max_workers": 4, "inter_wave_delay": 0},
        retry={"max_attempts": 1, "base_delay": 0, "jitter": 0},
        storage={"root": str(tmp_path / "artifacts")},
    )


class FakeHealthChecker:
    """Scripted health probe: pops results in order, repeats the last one."""

    def __init__(self, *healthy: bool) -> None:
        self.script: List[bool] = list(healthy) or [True]
        self.calls = 0

    async def check(self, site) -> HealthCheckResult:
        self.calls += 1
        value = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        return HealthCheckResult(value, "ok" if value else "site returned status 500",
                                 site_status=200 if value else 500)


class FakeUpdater:
    def __init__(self, *, marker: Optional[str] = "20240101-000000", rollback_ok: bool = True) -> None:
        self.marker = marker
        self.rollback_ok = rollback_ok
        self.updates: List[str] = []
        self.rollbacks: List[tuple] = []

    async def apply_update(self, site) -> UpdateResult:
        self.updates.append(site.id)
        return UpdateResult(True, site.update_method, marker=self.marker)

    async def rollback(self, site, marker) -> RollbackResult:
        self.rollbacks.append((site.id, marker))
        return RollbackResult(self.rollback_ok, site.update_method,
                              detail="restored" if self.rollback_ok else "db import failed")


class MemoryMarkerStore:
    def __init__(self, markers: Optional[Dict[str, str]] = None) -> None:
        self.markers = dict(markers or {})

    async def latest(self, site_id):
        return self.markers.get(site_id)

    async def record(self, site_id, marker):
        self.markers[site_id] = marker


class StoreCapturer:
    """Capturer that writes pre-baked images from ``images[(phase, page_id)]``."""

    def __init__(self, store, images: Dict[tuple, bytes]) -> None:
        self.store = store
        self.images = images
        self.calls: List[tuple] = []

    async def capture(self, site_id: str, page: PageRecord, phase: Phase, date: str) -> Capture:
        self.calls.append((phase, page.page_id))
        data = self.images.get((phase, page.page_id))
        if data is None:
            raise RuntimeError(f"no image for {page.page_id}")
        self.store.put(capture_key(phase, date, site_id, page.page_id), data)
        return Capture(site_id, page.page_id, phase, data, 0, 0, url=page.url)
