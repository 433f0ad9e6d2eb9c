"""wp_vrt.crawler: page discovery (robots.txt gate, HTTP loader, BFS)."""
from .discoverer import DiscoveryLimits, LinkDiscoverer
from .fetcher import HttpPageLoader, PageLoader
from .link_extractor import extract_links, normalize_url, page_identifier
from .robots import RobotsPolicy, RobotsTxtRules
from .ttl_cache import TTLCache

__all__ = [
    "DiscoveryLimits",
    "LinkDiscoverer",
    "HttpPageLoader",
    "PageLoader",
    "extract_links",
    "normalize_url",
    "page_identifier",
    "RobotsPolicy",
    "RobotsTxtRules",
    "TTLCache",
]
