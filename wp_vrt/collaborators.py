"""
External collaborators consumed by the site pipeline and the orchestrator.

The core only sees the protocols below; the default implementations talk to
WordPress over HTTP (aiohttp), run wp-cli locally or over ssh
(``asyncio.create_subprocess_exec``), keep known-good markers and results in
JSON files, and post batch summaries to Slack / Discord webhooks.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shlex
from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Union,
)

from aiohttp import BasicAuth, ClientError, ClientSession, ClientTimeout

from wp_vrt.config import Credential
from wp_vrt.errors import RollbackFailed, UpdateFailed
from wp_vrt.models import (
    BatchSummary,
    CommandResult,
    HealthCheckResult,
    RollbackResult,
    Site,
    SiteOutcome,
    UpdateResult,
)

__all__ = (
    "RobotsChecker",
    "HealthChecker",
    "Updater",
    "RollbackExecutor",
    "MarkerStore",
    "Persister",
    "Notifier",
    "HttpHealthChecker",
    "WordPressUpdater",
    "run_command",
    "JsonMarkerStore",
    "JsonResultStore",
    "WebhookNotifier",
    "build_notification",
)

logger = logging.getLogger("WPVRT.collaborators")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class RobotsChecker(Protocol):
    async def __call__(self, url: str) -> bool: ...


class HealthChecker(Protocol):
    async def check(self, site: Site) -> HealthCheckResult: ...


class Updater(Protocol):
    async def apply_update(self, site: Site) -> UpdateResult: ...


class RollbackExecutor(Protocol):
    async def rollback(self, site: Site, marker: str) -> RollbackResult: ...


class MarkerStore(Protocol):
    async def latest(self, site_id: str) -> Optional[str]: ...

    async def record(self, site_id: str, marker: str) -> None: ...


class Persister(Protocol):
    async def save_outcome(self, batch_id: str, outcome: SiteOutcome) -> None: ...

    async def save_summary(self, summary: BatchSummary, outcomes: Sequence[SiteOutcome]) -> None: ...


class Notifier(Protocol):
    async def notify(self, summary: BatchSummary, outcomes: Sequence[SiteOutcome]) -> None: ...


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HttpHealthChecker:
    """The site root must answer 200 and ``/wp-admin/`` anything below 500.

    Transport errors (``ClientError``, timeouts) propagate so that the caller
    can retry them; HTTP-level failures come back as an unhealthy result.
    """

    def __init__(self, session: ClientSession, *, timeout: float = 10.0) -> None:
        self.session = session
        self.timeout = timeout

    async def _status(self, url: str) -> int:
        async with self.session.get(
            url, timeout=ClientTimeout(total=self.timeout), allow_redirects=True
        ) as resp:
            return resp.status

    async def check(self, site: Site) -> HealthCheckResult:
        root = site.root_url
        site_status = await self._status(root + "/")
        if site_status != 200:
            return HealthCheckResult(False, f"site returned status {site_status}", site_status=site_status)
        admin_status = await self._status(root + "/wp-admin/")
        if admin_status >= 500:
            return HealthCheckResult(
                False,
                f"wp-admin returned status {admin_status}",
                site_status=site_status,
                admin_status=admin_status,
            )
        return HealthCheckResult(True, "ok", site_status=site_status, admin_status=admin_status)


# ---------------------------------------------------------------------------
# Update / rollback
# ---------------------------------------------------------------------------

CommandRunner = Callable[[Sequence[str], float], Awaitable[CommandResult]]


async def run_command(argv: Sequence[str], timeout: float) -> CommandResult:
    """Run *argv* without a shell; a non-zero exit or timeout is a failure."""
    label = shlex.join(argv)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as exc:
        return CommandResult(label, False, error=str(exc))
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(label, False, error=f"timed out after {timeout}s")
    out = stdout.decode("utf-8", "replace")
    err = stderr.decode("utf-8", "replace")
    if proc.returncode != 0:
        return CommandResult(label, False, output=out, error=err.strip() or f"exit status {proc.returncode}")
    return CommandResult(label, True, output=out, error=err)


# steps whose failure aborts the update sequence
_CRITICAL_STEPS = ("core update", "plugin update")


class WordPressUpdater:
    """Applies updates and rollbacks via wp-cli, ssh or the REST API.

    The database backup taken before updating is named after a timestamp;
    that timestamp is returned as the known-good marker, and ``rollback``
    restores the matching backup file.
    """

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        *,
        credentials: Optional[Mapping[str, Credential]] = None,
        command_timeout: float = 300.0,
        runner: CommandRunner = run_command,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.session = session
        self.credentials = dict(credentials or {})
        self.command_timeout = command_timeout
        self._run = runner
        self._clock = clock

    # -- command construction ---------------------------------------------

    def _argv(self, site: Site, wp_args: str) -> List[str]:
        if site.update_method == "wp-cli":
            argv = [site.wp_cli_path, *shlex.split(wp_args)]
            if site.install_path:
                argv.append(f"--path={site.install_path}")
            return argv
        if site.update_method == "ssh":
            remote = f"wp {wp_args}"
            if site.install_path:
                remote = f"cd {shlex.quote(site.install_path)} && {remote}"
            argv = ["ssh", "-o", "StrictHostKeyChecking=no"]
            if site.ssh_key:
                argv += ["-i", site.ssh_key]
            return argv + [f"{site.ssh_user}@{site.ssh_host}", remote]
        raise ValueError(f"no command line for update method {site.update_method}")

    def update_commands(self, site: Site, marker: str) -> List[List[str]]:
        return [
            self._argv(site, f"db export backup-{marker}.sql"),
            self._argv(site, "core update"),
            self._argv(site, "plugin update --all"),
            self._argv(site, "theme update --all"),
            self._argv(site, "cache flush"),
            self._argv(site, "rewrite flush"),
        ]

    def rollback_commands(self, site: Site, marker: str) -> List[List[str]]:
        return [
            self._argv(site, f"db import backup-{marker}.sql"),
            self._argv(site, "cache flush"),
            self._argv(site, "rewrite flush"),
        ]

    # -- update -----------------------------------------------------------

    async def apply_update(self, site: Site) -> UpdateResult:
        method = site.update_method
        logger.info("Starting WordPress update for %s via %s", site.root_url, method)
        if method in ("wp-cli", "ssh"):
            return await self._update_via_commands(site)
        if method == "rest-api":
            return await self._update_via_rest(site)
        raise UpdateFailed(f"unsupported update method: {method}")

    async def _update_via_commands(self, site: Site) -> UpdateResult:
        marker = self._clock().strftime("%Y%m%d-%H%M%S")
        steps: List[CommandResult] = []
        for argv in self.update_commands(site, marker):
            result = await self._run(argv, self.command_timeout)
            steps.append(result)
            if result.success:
                logger.info("OK %s", result.command)
                continue
            logger.error("FAILED %s: %s", result.command, result.error)
            if any(step in result.command for step in _CRITICAL_STEPS):
                raise UpdateFailed(f"{site.id}: {result.command} failed: {result.error}")
        backup_ok = bool(steps) and steps[0].success
        return UpdateResult(
            success=True,
            method=site.update_method,
            steps=steps,
            detail=f"{sum(s.success for s in steps)}/{len(steps)} steps succeeded",
            marker=marker if backup_ok else None,
        )

    def _auth(self, site: Site) -> BasicAuth:
        cred = self.credentials.get(site.credential_ref or "")
        if cred is None:
            raise UpdateFailed(f"{site.id}: no credentials for ref {site.credential_ref!r}")
        return BasicAuth(cred.username, cred.password.get_secret_value())

    async def _update_via_rest(self, site: Site) -> UpdateResult:
        if self.session is None:
            raise UpdateFailed("rest-api updates need an HTTP session")
        auth = self._auth(site)
        base = f"{site.root_url}/wp-json/wp/v2"
        steps: List[CommandResult] = []
        try:
            for kind, key in (("plugins", "plugin"), ("themes", "stylesheet")):
                async with self.session.get(f"{base}/{kind}", auth=auth, raise_for_status=True) as resp:
                    items = await resp.json()
                for item in items:
                    if not item.get("update_available"):
                        continue
                    label = f"{kind[:-1]} {item.get('name', item.get(key))}"
                    try:
                        async with self.session.post(
                            f"{base}/{kind}/{item[key]}",
                            json={"status": "active"},
                            auth=auth,
                            raise_for_status=True,
                        ) as resp:
                            body = await resp.json()
                        steps.append(CommandResult(label, True, output=str(body.get("version", ""))))
                    except ClientError as exc:
                        logger.error("FAILED %s: %s", label, exc)
                        steps.append(CommandResult(label, False, error=str(exc)))
        except (ClientError, asyncio.TimeoutError) as exc:
            raise UpdateFailed(f"{site.id}: REST API update failed", cause=exc) from exc
        return UpdateResult(
            success=True,
            method="rest-api",
            steps=steps,
            detail=f"{sum(s.success for s in steps)}/{len(steps)} items updated",
        )

    # -- rollback ---------------------------------------------------------

    async def rollback(self, site: Site, marker: str) -> RollbackResult:
        if site.update_method not in ("wp-cli", "ssh"):
            raise RollbackFailed(f"rollback not supported for method: {site.update_method}")
        logger.info("Starting rollback for %s to backup %s", site.root_url, marker)
        steps: List[CommandResult] = []
        for argv in self.rollback_commands(site, marker):
            result = await self._run(argv, self.command_timeout)
            steps.append(result)
            if not result.success:
                logger.error("FAILED rollback %s: %s", result.command, result.error)
                return RollbackResult(False, site.update_method, steps, detail=result.error)
            logger.info("OK rollback %s", result.command)
        return RollbackResult(True, site.update_method, steps, detail=f"restored backup-{marker}.sql")


# ---------------------------------------------------------------------------
# JSON-file persistence
# ---------------------------------------------------------------------------

def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)


class JsonMarkerStore:
    """Known-good markers per site, newest last, in one JSON file."""

    def __init__(self, path: Union[str, Path], *, keep: int = 20) -> None:
        self.path = Path(path)
        self.keep = keep
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, List[str]]:
        if not self.path.is_file():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8"))

    async def latest(self, site_id: str) -> Optional[str]:
        data = await asyncio.to_thread(self._read)
        markers = data.get(site_id) or []
        return markers[-1] if markers else None

    async def record(self, site_id: str, marker: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            markers = [m for m in data.get(site_id, []) if m != marker]
            markers.append(marker)
            data[site_id] = markers[-self.keep:]
            await asyncio.to_thread(_write_json, self.path, data)
        logger.debug("Recorded known-good marker %s for %s", marker, site_id)


class JsonResultStore:
    """Writes ``{root}/{batch_id}/{site_id}.json`` and ``summary.json``."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    async def save_outcome(self, batch_id: str, outcome: SiteOutcome) -> None:
        path = self.root / batch_id / f"{outcome.site_id}.json"
        await asyncio.to_thread(_write_json, path, outcome.to_dict())

    async def save_summary(self, summary: BatchSummary, outcomes: Sequence[SiteOutcome]) -> None:
        data = {"summary": summary.to_dict(), "sites": [o.site_id for o in outcomes]}
        await asyncio.to_thread(_write_json, self.root / summary.batch_id / "summary.json", data)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

_SLACK_COLORS = {"Critical": "danger", "Warning": "warning", "OK": "good"}
_DISCORD_COLORS = {"Critical": 0xE01E5A, "Warning": 0xECB22E, "OK": 0x2EB67D}


def build_notification(summary: BatchSummary, outcomes: Sequence[SiteOutcome] = ()) -> Dict[str, Any]:
    """Status, title and fields of the batch message, shared by all webhooks."""
    if summary.has_critical_results:
        status = "Critical"
    elif summary.has_ng_results:
        status = "Warning"
    else:
        status = "OK"
    fields = [
        ("Total Sites", summary.total_sites),
        ("Success", summary.success_count),
        ("Failures", summary.failure_count),
        ("NG Results", summary.ng_count),
        ("Critical Results", summary.critical_count),
        ("Avg Processing Time", f"{round(summary.avg_processing_time)}s"),
    ]
    flagged = [o.site_id for o in outcomes if o.is_ng or not o.success]
    return {
        "status": status,
        "title": f"WordPress VRT batch {summary.batch_id}: {status}",
        "fields": [(name, str(value)) for name, value in fields],
        "flagged_sites": flagged,
    }


class WebhookNotifier:
    def __init__(
        self,
        session: ClientSession,
        *,
        slack_webhook_url: Optional[str] = None,
        discord_webhook_url: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.session = session
        self.slack_webhook_url = slack_webhook_url
        self.discord_webhook_url = discord_webhook_url
        self.timeout = timeout
        # batch_id -> webhook URLs that already accepted that batch's message
        self._delivered: Dict[str, Set[str]] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.slack_webhook_url or self.discord_webhook_url)

    @staticmethod
    def slack_payload(message: Dict[str, Any]) -> Dict[str, Any]:
        text = message["title"]
        if message["flagged_sites"]:
            text += "\nSites needing attention: " + ", ".join(message["flagged_sites"])
        return {
            "text": text,
            "attachments": [{
                "color": _SLACK_COLORS[message["status"]],
                "fields": [{"title": n, "value": v, "short": True} for n, v in message["fields"]],
            }],
        }

    @staticmethod
    def discord_payload(message: Dict[str, Any]) -> Dict[str, Any]:
        description = ", ".join(message["flagged_sites"]) or "No regressions"
        return {
            "embeds": [{
                "title": message["title"],
                "description": description,
                "color": _DISCORD_COLORS[message["status"]],
                "fields": [{"name": n, "value": v, "inline": True} for n, v in message["fields"]],
            }],
        }

    async def _post(self, url: str, payload: Dict[str, Any]) -> None:
        async with self.session.post(
            url, json=payload, timeout=ClientTimeout(total=self.timeout), raise_for_status=True
        ):
            pass

    async def notify(self, summary: BatchSummary, outcomes: Sequence[SiteOutcome]) -> None:
        """Post to every configured webhook; raises the first failure after trying all.

        A webhook that accepted this batch's message is skipped when the call
        is repeated, so retries only reach the webhooks that failed.
        """
        if not self.enabled:
            logger.debug("No webhook configured, skipping notification")
            return
        message = build_notification(summary, outcomes)
        delivered = self._delivered.setdefault(summary.batch_id, set())
        targets = [
            (url, payload(message))
            for url, payload in (
                (self.slack_webhook_url, self.slack_payload),
                (self.discord_webhook_url, self.discord_payload),
            )
            if url and url not in delivered
        ]
        results = await asyncio.gather(*(self._post(url, body) for url, body in targets), return_exceptions=True)
        errors = []
        for (url, _), result in zip(targets, results):
            if isinstance(result, BaseException):
                errors.append(result)
            else:
                delivered.add(url)
        if errors:
            raise errors[0]
        logger.info("Batch notification sent (%s)", message["status"])
