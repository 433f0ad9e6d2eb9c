"""
Fetcher module: loads pages over HTTP for link discovery.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from wp_vrt.errors import NavigationError


class PageLoader(Protocol):
    async def load(self, url: str) -> str: ...


class HttpPageLoader:
    """Fetches HTML with a per-request timeout. No retry at this layer."""

    def __init__(
        self,
        session: ClientSession,
        *,
        user_agent: str,
        timeout: float = 30.0,
    ) -> None:
        self.session = session
        self.user_agent = user_agent
        self.timeout = timeout

    async def load(self, url: str) -> str:
        """
        Return the HTML body of *url*.

        Raises NavigationError on non-2xx answers, non-HTML content, timeouts,
        client errors and bodies that do not decode in the declared charset.
        """
        try:
            async with self.session.get(
                url,
                timeout=ClientTimeout(total=self.timeout),
                headers={"User-Agent": self.user_agent},
                raise_for_status=False,
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise NavigationError(url, f"HTTP {resp.status} for {url}")
                ctype = resp.headers.get("Content-Type", "").split(";", 1)[0].strip().lower()
                if ctype and "html" not in ctype:
                    raise NavigationError(url, f"not an HTML page ({ctype}): {url}")
                return await resp.text()
        except asyncio.TimeoutError as exc:
            raise NavigationError(url, f"timeout after {self.timeout}s: {url}", cause=exc) from exc
        except (UnicodeDecodeError, LookupError) as exc:
            raise NavigationError(url, f"undecodable body: {url}", cause=exc) from exc
        except ClientError as exc:
            raise NavigationError(url, cause=exc) from exc


def default_session(user_agent: str, timeout: Optional[float] = None) -> ClientSession:
    """ClientSession configured the way every HTTP collaborator expects."""
    return ClientSession(
        timeout=ClientTimeout(total=timeout) if timeout else ClientTimeout(),
        headers={"User-Agent": user_agent},
        raise_for_status=False,
    )


__all__ = ["PageLoader", "HttpPageLoader", "default_session"]
