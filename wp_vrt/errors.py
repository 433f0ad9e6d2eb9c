"""Error taxonomy shared by every stage of the VRT pipeline."""
from __future__ import annotations

from typing import Optional

__all__ = (
    "VRTError",
    "ConfigError",
    "NavigationError",
    "PolicyBlocked",
    "CaptureError",
    "MissingBaseline",
    "MissingAfter",
    "DimensionMismatch",
    "CorruptedImage",
    "HealthCheckFailed",
    "UpdateFailed",
    "RollbackFailed",
    "ResourceExhausted",
)


class VRTError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        cause: The underlying exception, if any (also set as ``__cause__``
            when raised with ``raise ... from``).
        stage: Name of the pipeline stage the error belongs to, filled in by
            the site state machine.
    """

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None, stage: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.cause = cause
        self.stage = stage

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def __str__(self) -> str:
        text = super().__str__()
        if self.cause is not None and str(self.cause) not in text:
            return f"{text}: {self.cause}"
        return text


class ConfigError(VRTError):
    """Invalid site selection or configuration value."""


class NavigationError(VRTError):
    """A page failed to load."""

    def __init__(self, url: str, message: str = "", **kwargs) -> None:
        super().__init__(message or f"failed to load {url}", **kwargs)
        self.url = url


class PolicyBlocked(VRTError):
    """robots.txt disallows the URL. Not an error for reporting purposes."""

    def __init__(self, url: str, **kwargs) -> None:
        super().__init__(f"blocked by robots.txt: {url}", **kwargs)
        self.url = url


class CaptureError(VRTError):
    """A screenshot could not be produced."""


class MissingBaseline(VRTError):
    """Comparison pair has no baseline capture."""


class MissingAfter(VRTError):
    """Comparison pair has no after capture."""


class DimensionMismatch(VRTError):
    """Pair sizes differ and the strict size policy is active."""


class CorruptedImage(VRTError):
    """A capture could not be decoded."""


class HealthCheckFailed(VRTError):
    """Site probe reported the site as unhealthy."""


class UpdateFailed(VRTError):
    """The external update action failed."""


class RollbackFailed(VRTError):
    """Rollback could not be performed (including a missing known-good marker)."""


class ResourceExhausted(VRTError):
    """Emergency stop triggered by the resource monitor."""
