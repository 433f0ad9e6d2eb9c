"""wp_vrt.report.html_report: HTML batch report rendered with Jinja2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional, Union

from jinja2 import Environment, FileSystemLoader, select_autoescape

from wp_vrt.models import BatchResult

TEMPLATE_NAME = "report.html.j2"

# Lower rank is listed first.
_SITE_RANK = {"failed": 0, "critical": 1, "NG": 2, "OK": 3}
_PAGE_RANK = {"NG": 0, "DIMENSION_MISMATCH": 1, "ERROR": 1, "MISSING_AFTER": 2, "OK": 3}


def _site_rank(site: dict[str, Any]) -> int:
    if site["status"] == "failed":
        return _SITE_RANK["failed"]
    verdict = site.get("verdict") or {}
    if verdict.get("critical_regression"):
        return _SITE_RANK["critical"]
    return _SITE_RANK.get(verdict.get("status", "OK"), _SITE_RANK["OK"])


def _diff_href(diff_path: Optional[str], artifact_root: Optional[Path], report_dir: Path) -> Optional[str]:
    """Link to the diff image, relative to the report so the folder stays portable."""
    if not diff_path or artifact_root is None:
        return None
    target = (artifact_root / diff_path).resolve()
    return Path(os.path.relpath(target, report_dir.resolve())).as_posix()


def build_context(batch: BatchResult, artifact_root: Optional[Path], report_dir: Path) -> dict[str, Any]:
    data = batch.to_dict()
    sites = sorted(data["outcomes"], key=_site_rank)
    for site in sites:
        rows = sorted(
            site.get("results", {}).values(),
            key=lambda r: (_PAGE_RANK.get(r["status"], 1), -(r["diff_percentage"] or 0.0), r["page_id"]),
        )
        for row in rows:
            row["diff_href"] = _diff_href(row["diff_path"], artifact_root, report_dir)
        site["rows"] = rows
    return {"summary": data["summary"], "sites": sites}


def render_html(
    batch: BatchResult,
    template_dir: Union[Path, str],
    output_path: Union[Path, str],
    *,
    artifact_root: Union[Path, str, None] = None,
) -> Path:
    """Render the batch report from ``report.html.j2`` and save it.

    Sites are listed worst first (failed, critical, NG, OK) and pages by
    status, then by descending diff percentage.

    Args:
        batch: result of one batch run.
        template_dir: directory holding the Jinja2 templates.
        output_path: target HTML file.
        artifact_root: storage root; when given, diff images are linked.

    Returns:
        Path of the written file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    env = Environment(
        loader=FileSystemLoader(str(template_dir)),
        autoescape=select_autoescape(["html", "xml", "j2"]),
    )
    template = env.get_template(TEMPLATE_NAME)

    root = Path(artifact_root) if artifact_root is not None else None
    context = build_context(batch, root, output_path.parent)

    output_path.write_text(template.render(**context), encoding="utf-8")
    return output_path
