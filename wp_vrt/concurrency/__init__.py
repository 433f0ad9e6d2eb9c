"""wp_vrt.concurrency: wave-based bounded parallelism with adaptive budgets."""
from .budget import WorkerBudget
from .controller import ConcurrencyController, ItemResult, ResourceMonitor, recommended_settings
from .sampler import ResourceSampler, psutil_snapshot

__all__ = [
    "WorkerBudget",
    "ConcurrencyController",
    "ItemResult",
    "ResourceMonitor",
    "ResourceSampler",
    "psutil_snapshot",
    "recommended_settings",
]
