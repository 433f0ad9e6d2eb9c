"""
Loading and validation of the wp_vrt configuration.

The whole run is driven by one immutable :class:`VRTConfig`, resolved once at
startup (file + environment overrides) and handed to every component.
Pydantic describes the schema and checks the data.
"""
from __future__ import annotations

import errno
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

UpdateMethod = Literal["wp-cli", "ssh", "rest-api", "none"]
SizePolicy = Literal["pad", "strict"]


class SiteConfig(BaseModel):
    """One WordPress site under test. Immutable for the duration of a run."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9._-]+$", description="Stable site identifier.")
    url: HttpUrl = Field(..., description="Root URL of the site.")
    max_pages: int = Field(300, ge=1, description="Upper bound of discovered pages (maxUrls).")
    max_depth: int = Field(3, ge=0, description="Maximum link depth from the root.")
    update_method: UpdateMethod = Field("none", description="How updates and rollbacks are executed.")
    credential_ref: Optional[str] = Field(None, description="Opaque reference resolved by collaborators.")
    wp_cli_path: str = Field("wp", description="wp-cli binary on the target host.")
    install_path: Optional[str] = Field(None, description="WordPress install directory.")
    ssh_host: Optional[str] = None
    ssh_user: Optional[str] = None
    ssh_key: Optional[str] = None

    @field_validator("url", mode="before")
    def _strip_trailing_slash(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    @model_validator(mode="after")
    def _check_update_method(self) -> SiteConfig:
        if self.update_method == "ssh" and not (self.ssh_host and self.ssh_user):
            raise ValueError(f"site {self.id}: ssh update requires ssh_host and ssh_user")
        return self

    @property
    def root_url(self) -> str:
        return str(self.url).rstrip("/")


class CrawlSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    user_agent: str = Field("WordPress-Visual-Diff-Bot/1.0", min_length=1)
    timeout: float = Field(30.0, gt=0, description="Per-page load timeout (seconds).")
    request_delay: float = Field(0.0, ge=0, description="Pause between page loads (seconds).")
    robots_timeout: float = Field(5.0, gt=0)
    robots_ttl: float = Field(3600.0, gt=0, description="robots.txt cache lifetime (seconds).")


class CaptureSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    viewport_width: int = Field(1920, ge=1)
    viewport_height: int = Field(1080, ge=1)
    navigation_timeout: float = Field(30.0, gt=0)
    scroll_step_delay: float = Field(0.8, ge=0)
    max_scroll_steps: int = Field(10, ge=0)
    loader_timeout: float = Field(5.0, ge=0)
    loader_poll_interval: float = Field(0.25, gt=0)
    settle_delay: float = Field(2.0, ge=0)
    headless: bool = True
    capture_timeout: float = Field(120.0, gt=0, description="Hard bound for one capture.")


class DiffSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    threshold: float = Field(2.0, ge=0, description="Page NG above this diff percentage.")
    critical_threshold: float = Field(10.0, ge=0, description="Rollback candidate above this.")
    pixel_threshold: float = Field(0.1, ge=0, le=1, description="YIQ colour distance sensitivity.")
    alpha: float = Field(0.5, ge=0, le=1, description="Opacity of unchanged pixels in diff image.")
    size_mismatch: SizePolicy = "pad"
    compare_timeout: float = Field(60.0, gt=0)


class ConcurrencySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_concurrent_sites: int = Field(5, ge=1)
    max_concurrent_pages: int = Field(4, ge=1)
    min_workers: int = Field(2, ge=1)
    max_workers: int = Field(default_factory=lambda: max(2, (os.cpu_count() or 1) * 2), ge=1)
    max_cpu_percent: float = Field(80.0, gt=0, le=100)
    max_memory_percent: float = Field(85.0, gt=0, le=100)
    cpu_low_watermark: float = Field(50.0, ge=0, le=100)
    process_memory_cap_mb: float = Field(1000.0, gt=0)
    emergency_cpu_percent: float = Field(95.0, gt=0, le=100)
    emergency_memory_percent: float = Field(95.0, gt=0, le=100)
    memory_leak_mb_per_min: float = Field(100.0, gt=0)
    adjust_interval: float = Field(5.0, gt=0)
    emergency_interval: float = Field(1.0, gt=0)
    history_size: int = Field(20, ge=5)
    inter_wave_delay: float = Field(5.0, ge=0, description="Pause between site waves (seconds).")

    @model_validator(mode="after")
    def _check_bounds(self) -> ConcurrencySettings:
        if self.min_workers > self.max_workers:
            raise ValueError("min_workers must not exceed max_workers")
        if self.cpu_low_watermark >= self.max_cpu_percent:
            raise ValueError("cpu_low_watermark must be below max_cpu_percent")
        return self


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(60.0, ge=0)
    jitter: float = Field(1.0, ge=0)


class UpdateSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command_timeout: float = Field(300.0, gt=0, description="Bound for one wp-cli / ssh command.")
    health_timeout: float = Field(10.0, gt=0, description="Bound for one health probe request.")


class Credential(BaseModel):
    """Basic-auth credential for the WordPress REST API."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    username: str = Field(..., min_length=1)
    password: SecretStr


class StorageSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    root: Path = Field(Path("artifacts"), description="Root directory for captures and diffs.")
    results_dir: Optional[Path] = Field(None, description="Defaults to <root>/results.")
    markers_file: Optional[Path] = Field(None, description="Defaults to <root>/markers.json.")

    @property
    def results_path(self) -> Path:
        return self.results_dir or self.root / "results"

    @property
    def markers_path(self) -> Path:
        return self.markers_file or self.root / "markers.json"


class NotificationSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    slack_webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    timeout: float = Field(10.0, gt=0)


class VRTConfig(BaseModel):
    """Immutable configuration for one batch run."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    sites: List[SiteConfig] = Field(default_factory=list)
    crawl: CrawlSettings = Field(default_factory=CrawlSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    diff: DiffSettings = Field(default_factory=DiffSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    update: UpdateSettings = Field(default_factory=UpdateSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    credentials: Dict[str, Credential] = Field(default_factory=dict, description="Keyed by site credential_ref.")

    @model_validator(mode="after")
    def _check_consistency(self) -> VRTConfig:
        if self.diff.critical_threshold < self.diff.threshold:
            raise ValueError("diff.critical_threshold must be >= diff.threshold")
        ids = [s.id for s in self.sites]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ValueError(f"duplicate site ids: {', '.join(dupes)}")
        for s in self.sites:
            if s.update_method == "rest-api" and s.credential_ref not in self.credentials:
                raise ValueError(f"site {s.id}: rest-api update needs a known credential_ref")
        return self

    def site(self, site_id: str) -> SiteConfig:
        for s in self.sites:
            if s.id == site_id:
                return s
        raise KeyError(site_id)


_DEFAULT_CFG = Path("configs/default.yaml")

# env var -> (section, field, caster)
_ENV_OVERRIDES: Dict[str, tuple[str, str, type]] = {
    "VRT_DIFF_THRESHOLD": ("diff", "threshold", float),
    "VRT_CRITICAL_THRESHOLD": ("diff", "critical_threshold", float),
    "VRT_MAX_CONCURRENT_SITES": ("concurrency", "max_concurrent_sites", int),
    "VRT_MAX_CONCURRENT_PAGES": ("concurrency", "max_concurrent_pages", int),
    "VRT_STORAGE_ROOT": ("storage", "root", str),
    "VRT_SLACK_WEBHOOK_URL": ("notifications", "slack_webhook_url", str),
    "VRT_DISCORD_WEBHOOK_URL": ("notifications", "discord_webhook_url", str),
}


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Top level of YAML must be a mapping, got {type(data).__name__}")
    return data


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8")) or {}
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Top level of JSON must be a mapping, got {type(data).__name__}")
    return data


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Merge ``VRT_*`` environment variables into raw config data.

    ``VRT_MAX_CRAWL_URLS`` caps ``max_pages`` of every site.
    """
    merged = dict(data)
    for var, (section, key, caster) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = caster(raw)
        except ValueError as exc:
            raise ValueError(f"{var}={raw!r} is not a valid {caster.__name__}") from exc
        block = dict(merged.get(section) or {})
        block[key] = value
        merged[section] = block

    max_urls = environ.get("VRT_MAX_CRAWL_URLS")
    if max_urls:
        cap = int(max_urls)
        merged["sites"] = [
            {**site, "max_pages": min(int(site.get("max_pages", cap)), cap)}
            for site in merged.get("sites") or []
        ]
    return merged


def load_config(
    path: Union[str, Path, None],
    environ: Optional[Mapping[str, str]] = None,
) -> VRTConfig:
    """
    Read YAML or JSON, apply environment overrides and return a validated
    :class:`VRTConfig`. Missing files raise ``FileNotFoundError``.
    """
    if path is None:
        if not _DEFAULT_CFG.exists():
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(_DEFAULT_CFG))
        path_obj = _DEFAULT_CFG
    else:
        path_obj = Path(path).expanduser().resolve()
        if not path_obj.is_file():
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(path_obj))

    suffix = path_obj.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = _read_yaml(path_obj)
    elif suffix == ".json":
        data = _read_json(path_obj)
    else:
        raise ValueError(f"Unsupported config format: {suffix}")

    data = apply_env_overrides(data, os.environ if environ is None else environ)
    return VRTConfig(**data)


__all__ = [
    "SiteConfig",
    "CrawlSettings",
    "CaptureSettings",
    "DiffSettings",
    "ConcurrencySettings",
    "RetrySettings",
    "UpdateSettings",
    "Credential",
    "StorageSettings",
    "NotificationSettings",
    "VRTConfig",
    "ValidationError",
    "apply_env_overrides",
    "load_config",
]
