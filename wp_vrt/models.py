"""
Data records flowing through the VRT pipeline.

Records produced by one stage and read by the next are frozen dataclasses;
the site and batch aggregates are assembled incrementally by the state
machine and the orchestrator and exposed through ``to_dict()`` for
persistence.
"""
from __future__ import annotations

import enum
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from wp_vrt.config import SiteConfig

# A "Site" is the validated, frozen site configuration.
Site = SiteConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, enum.Enum):
    BASELINE = "baseline"
    AFTER = "after"


class Mode(str, enum.Enum):
    BASELINE = "baseline"
    AFTER = "after"
    COMPARE = "compare"
    FULL = "full"


class ComparisonStatus(str, enum.Enum):
    OK = "OK"
    NG = "NG"
    MISSING_AFTER = "MISSING_AFTER"
    DIMENSION_MISMATCH = "DIMENSION_MISMATCH"
    ERROR = "ERROR"


class SiteStatus(str, enum.Enum):
    DONE = "done"
    FAILED = "failed"


class Stage(str, enum.Enum):
    HEALTH_CHECK = "health_check"
    DISCOVER = "discover"
    CAPTURE_BASELINE = "capture_baseline"
    APPLY_UPDATE = "apply_update"
    POST_UPDATE_HEALTH_CHECK = "post_update_health_check"
    CAPTURE_AFTER = "capture_after"
    COMPARE = "compare"
    ROLLBACK = "rollback"
    POST_ROLLBACK_HEALTH_CHECK = "post_rollback_health_check"
    DONE = "done"
    SCHEDULING = "scheduling"


@dataclass(slots=True, frozen=True)
class PageRecord:
    """A discovered URL plus the identifier used to pair captures."""

    url: str
    page_id: str
    depth: int = 0
    error: Optional[str] = None

    @property
    def loaded(self) -> bool:
        return self.error is None


@dataclass(slots=True, frozen=True)
class Viewport:
    width: int
    height: int
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or f"{self.width}x{self.height}"


@dataclass(slots=True, frozen=True)
class Capture:
    """One full-page raster for (site, page, phase)."""

    site_id: str
    page_id: str
    phase: Phase
    image: bytes
    width: int
    height: int
    captured_at: datetime = field(default_factory=utcnow)
    url: str = ""

    @property
    def pair_key(self) -> tuple[str, str]:
        return (self.site_id, self.page_id)


@dataclass(slots=True, frozen=True)
class ComparisonResult:
    """Classified outcome of comparing one page's baseline and after captures."""

    page_id: str
    status: ComparisonStatus
    threshold: float
    diff_percentage: Optional[float] = None
    diff_pixel_count: int = 0
    diff_image: Optional[bytes] = None
    width: int = 0
    height: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    diff_path: Optional[str] = None

    @property
    def display_percentage(self) -> Optional[float]:
        return None if self.diff_percentage is None else round(self.diff_percentage, 3)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_id": self.page_id,
            "status": self.status.value,
            "threshold": self.threshold,
            "diff_percentage": self.display_percentage,
            "diff_pixel_count": self.diff_pixel_count,
            "width": self.width,
            "height": self.height,
            "error": self.error,
            "error_kind": self.error_kind,
            "diff_path": self.diff_path,
        }


@dataclass(slots=True)
class HealthCheckResult:
    healthy: bool
    detail: str = ""
    site_status: Optional[int] = None
    admin_status: Optional[int] = None
    checked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["checked_at"] = self.checked_at.isoformat()
        return data


@dataclass(slots=True)
class CommandResult:
    command: str
    success: bool
    output: str = ""
    error: str = ""


@dataclass(slots=True)
class UpdateResult:
    success: bool
    method: str
    steps: List[CommandResult] = field(default_factory=list)
    detail: str = ""
    marker: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RollbackResult:
    success: bool
    method: str
    steps: List[CommandResult] = field(default_factory=list)
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RollbackOutcome:
    attempted: bool
    success: bool = False
    marker: Optional[str] = None
    result: Optional[RollbackResult] = None
    error: Optional[str] = None
    post_health: Optional[HealthCheckResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "success": self.success,
            "marker": self.marker,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "post_health": self.post_health.to_dict() if self.post_health else None,
        }


@dataclass(slots=True)
class SiteVerdict:
    status: ComparisonStatus
    total_pages: int = 0
    ok_count: int = 0
    ng_count: int = 0
    critical_count: int = 0
    missing_count: int = 0
    error_count: int = 0
    avg_diff_percentage: float = 0.0

    @property
    def critical_regression(self) -> bool:
        return self.critical_count > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["critical_regression"] = self.critical_regression
        return data


@dataclass(slots=True)
class SiteOutcome:
    """Everything one site's run produced. Exactly one per input site."""

    site_id: str
    site_url: str
    mode: Mode
    status: SiteStatus = SiteStatus.DONE
    failed_stage: Optional[Stage] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    health_checks: Dict[Stage, HealthCheckResult] = field(default_factory=dict)
    pages: List[PageRecord] = field(default_factory=list)
    captures: Dict[Phase, int] = field(default_factory=dict)
    results: Dict[str, ComparisonResult] = field(default_factory=dict)
    verdict: Optional[SiteVerdict] = None
    update: Optional[UpdateResult] = None
    rollback: Optional[RollbackOutcome] = None
    processing_time: float = 0.0
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.status is SiteStatus.DONE

    @property
    def is_ng(self) -> bool:
        return self.verdict is not None and self.verdict.status is ComparisonStatus.NG

    @property
    def is_critical(self) -> bool:
        return self.verdict is not None and self.verdict.critical_regression

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site_id": self.site_id,
            "site_url": self.site_url,
            "mode": self.mode.value,
            "status": self.status.value,
            "success": self.success,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error,
            "error_kind": self.error_kind,
            "health_checks": {k.value: v.to_dict() for k, v in self.health_checks.items()},
            "pages": [asdict(p) for p in self.pages],
            "captures": {k.value: v for k, v in self.captures.items()},
            "results": {k: v.to_dict() for k, v in self.results.items()},
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "update": self.update.to_dict() if self.update else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "processing_time": round(self.processing_time, 3),
            "finished_at": self.finished_at.isoformat(),
        }


@dataclass(slots=True)
class BatchSummary:
    total_sites: int
    success_count: int
    failure_count: int
    ng_count: int
    critical_count: int
    avg_processing_time: float = 0.0
    emergency_stopped: bool = False
    batch_id: str = field(default_factory=lambda: f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}")
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def has_ng_results(self) -> bool:
        return self.ng_count > 0

    @property
    def has_critical_results(self) -> bool:
        return self.critical_count > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["has_ng_results"] = self.has_ng_results
        data["has_critical_results"] = self.has_critical_results
        return data


@dataclass(slots=True)
class BatchResult:
    summary: BatchSummary
    outcomes: List[SiteOutcome]

    def outcome(self, site_id: str) -> SiteOutcome:
        for o in self.outcomes:
            if o.site_id == site_id:
                return o
        raise KeyError(site_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass(slots=True, frozen=True)
class ResourceSnapshot:
    cpu_percent: float
    memory_percent: float
    process_rss: int = 0
    timestamp: float = field(default_factory=time.monotonic)

    @property
    def process_rss_mb(self) -> float:
        return self.process_rss / 1024 / 1024


@dataclass(slots=True, frozen=True)
class BudgetAdjustment:
    timestamp: float
    old: int
    new: int
    reason: str

    @property
    def direction(self) -> str:
        return "scale-up" if self.new > self.old else "scale-down"


__all__ = [
    "Site",
    "Phase",
    "Mode",
    "ComparisonStatus",
    "SiteStatus",
    "Stage",
    "PageRecord",
    "Viewport",
    "Capture",
    "ComparisonResult",
    "HealthCheckResult",
    "CommandResult",
    "UpdateResult",
    "RollbackResult",
    "RollbackOutcome",
    "SiteVerdict",
    "SiteOutcome",
    "BatchSummary",
    "BatchResult",
    "ResourceSnapshot",
    "BudgetAdjustment",
    "utcnow",
]
