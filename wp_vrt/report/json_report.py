# wp_vrt/report/json_report.py

"""
JSON report for one batch run.

Serialises a BatchResult (summary plus one entry per site) to a file.
"""
import json
from pathlib import Path
from typing import Union

from wp_vrt.models import BatchResult


def render_json(batch: BatchResult, output_path: Union[Path, str], *, pretty: bool = True) -> Path:
    """
    Save *batch* as JSON at *output_path* and return the path.

    Example:
    ```python
    from wp_vrt.report.json_report import render_json
    report_path = render_json(batch, 'reports/batch.json')
    ```
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    with output.open('w', encoding='utf-8') as f:
        json.dump(batch.to_dict(), f, ensure_ascii=False, indent=2 if pretty else None)

    return output
