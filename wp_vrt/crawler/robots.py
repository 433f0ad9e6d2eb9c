# wp_vrt/crawler/robots.py
"""
robots.txt parsing and the per-host policy gate used by link discovery.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from wp_vrt.crawler.ttl_cache import TTLCache

__all__ = ("RobotsTxtRules", "RobotsPolicy")

logger = logging.getLogger("WPVRT.robots")


class RobotsTxtRules:
    """
    Parses robots.txt (RFC 9309).
    An empty Disallow allows every path. The longest matching rule wins and
    Allow wins ties.
    """
    _Directive = Tuple[str, str]
    _WILDCARD_RE = re.compile(r"(\*|\$)")

    def __init__(self, text: str) -> None:
        self._groups: List[Dict[str, object]] = []
        self._regex_cache: Dict[str, re.Pattern[str]] = {}
        self.sitemaps: List[str] = []
        self._parse(text)

    def can_fetch(self, user_agent: str, path: str) -> bool:
        group = self._match_group(user_agent)
        if group is None:
            return True
        best_len = -1
        allow: Optional[bool] = None
        for directive, pattern in group["directives"]:  # type: ignore[index]
            if not self._match_path(path, pattern):
                continue
            length = self._rule_len(pattern)
            if length > best_len or (length == best_len and directive == "allow" and allow is False):
                best_len = length
                allow = (directive == "allow")
        return True if allow is None else allow

    def crawl_delay(self, user_agent: str) -> Optional[float]:
        group = self._match_group(user_agent)
        return None if group is None else group.get("crawl_delay")  # type: ignore[return-value]

    def _new_group(self) -> Dict[str, object]:
        group: Dict[str, object] = {"agents": ["*"], "directives": [], "crawl_delay": None}
        self._groups.append(group)
        return group

    def _parse(self, text: str) -> None:
        current: Optional[Dict[str, object]] = None
        for raw in text.splitlines():
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            key, _, val = line.partition(":")
            key = key.lower().strip()
            val = val.strip()
            if key == "sitemap":
                if val:
                    self.sitemaps.append(val)
            elif key == "user-agent":
                if current is None or (current["agents"] and (current["directives"] or current["crawl_delay"] is not None)):
                    current = {"agents": [], "directives": [], "crawl_delay": None}
                    self._groups.append(current)
                current["agents"].append(val.lower())  # type: ignore[union-attr]
            elif key in ("allow", "disallow"):
                # an empty Disallow allows everything
                if key == "disallow" and val == "":
                    continue
                if current is None:
                    current = self._new_group()
                current["directives"].append((key, val))  # type: ignore[union-attr]
            elif key == "crawl-delay":
                if current is None:
                    current = self._new_group()
                try:
                    current["crawl_delay"] = float(val)
                except ValueError:
                    logger.debug("Ignoring malformed Crawl-delay: %r", val)

    def _match_group(self, user_agent: str) -> Optional[Dict[str, object]]:
        ua = user_agent.lower()
        for group in self._groups:
            if any(a != "*" and self._ua_match(ua, a) for a in group["agents"]):  # type: ignore[union-attr]
                return group
        for group in self._groups:
            if "*" in group["agents"]:  # type: ignore[operator]
                return group
        return None

    @staticmethod
    def _ua_match(ua: str, pattern: str) -> bool:
        return pattern == "*" or ua.startswith(pattern)

    def _match_path(self, path: str, pattern: str) -> bool:
        if pattern not in self._regex_cache:
            esc = re.escape(pattern).replace(r"\*", ".*")
            if pattern.endswith("$"):
                esc = esc[:-2] + "$"
            else:
                esc += ".*"
            self._regex_cache[pattern] = re.compile(f"^{esc}")
        return bool(self._regex_cache[pattern].match(path))

    @classmethod
    def _rule_len(cls, pattern: str) -> int:
        return len(cls._WILDCARD_RE.sub("", pattern))


class RobotsPolicy:
    """``robots_allowed(url)`` gate with a per-host TTL cache.

    A host without a robots.txt (non-200 answer) or whose robots.txt cannot be
    fetched is treated as allow-all; that verdict is cached like a parsed
    file so the host is not asked again until the entry expires.
    """

    def __init__(
        self,
        session: ClientSession,
        user_agent: str,
        *,
        ttl: float = 3600.0,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.user_agent = user_agent
        self.timeout = timeout
        self._cache: TTLCache[str, Optional[RobotsTxtRules]] = TTLCache(ttl, clock=clock)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def robots_allowed(self, url: str) -> bool:
        rules = await self._rules_for(url)
        if rules is None:
            return True
        parsed = urlparse(url)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        allowed = rules.can_fetch(self.user_agent, path)
        if not allowed:
            logger.debug("robots.txt blocks %s", url)
        return allowed

    __call__ = robots_allowed

    async def crawl_delay(self, url: str) -> Optional[float]:
        rules = await self._rules_for(url)
        return None if rules is None else rules.crawl_delay(self.user_agent)

    async def sitemaps(self, url: str) -> List[str]:
        rules = await self._rules_for(url)
        return [] if rules is None else list(rules.sitemaps)

    def clear(self) -> None:
        self._cache.clear()
        logger.info("robots.txt cache cleared")

    def stats(self) -> Dict[str, object]:
        hosts = self._cache.keys()
        return {"size": len(hosts), "hosts": hosts}

    async def _rules_for(self, url: str) -> Optional[RobotsTxtRules]:
        parsed = urlparse(url)
        host = parsed.netloc.lower()
        if host in self._cache:
            return self._cache.get(host)
        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            if host in self._cache:
                return self._cache.get(host)
            rules = await self._load(parsed.scheme or "http", host)
            self._cache.set(host, rules)
            return rules

    async def _load(self, scheme: str, host: str) -> Optional[RobotsTxtRules]:
        robots_url = urlunparse((scheme, host, "/robots.txt", "", "", ""))
        try:
            async with self.session.get(
                robots_url,
                timeout=ClientTimeout(total=self.timeout),
                headers={"User-Agent": self.user_agent},
            ) as resp:
                if resp.status != 200:
                    logger.debug("robots.txt %s -> HTTP %s, allowing all", robots_url, resp.status)
                    return None
                text = await resp.text()
        except (ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Error loading %s: %s; allowing all", robots_url, exc)
            return None
        except (UnicodeDecodeError, LookupError) as exc:
            logger.warning("Cannot decode %s: %s; allowing all", robots_url, exc)
            return None
        logger.info("Loaded robots.txt for %s", host)
        return RobotsTxtRules(text)
