#!/usr/bin/env python3
"""
Read desktop assignment requests from CSV and write the results report.

Input CSV columns (header row required, names are case-sensitive):
  MachineName,UserName,DeliveryGroupName

Extra columns are ignored.

Output:
- AssignmentResults_<timestamp>.csv next to the input (one row per request)
- optional JSON audit log (summary + per-record results)
"""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from reconcile import AssignmentOutcome, AssignmentRequest, summarize

REQUIRED_COLUMNS = ("MachineName", "UserName", "DeliveryGroupName")
REPORT_COLUMNS = ["MachineName", "UserName", "DeliveryGroupName", "Status"]


class InputFormatError(ValueError):
    pass


class MissingColumnsError(ValueError):
    def __init__(self, missing: List[str]) -> None:
        super().__init__(f"CSV is missing required columns: {', '.join(missing)}")
        self.missing = missing


def now_utc() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def read_requests(input_csv: Path) -> List[AssignmentRequest]:
    # utf-8-sig: exports from Excel and PowerShell often carry a BOM
    try:
        with input_csv.open(newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            missing = sorted(set(REQUIRED_COLUMNS) - set(reader.fieldnames or []))
            if missing:
                raise MissingColumnsError(missing)
            return [
                AssignmentRequest(
                    machine_name=row.get("MachineName") or "",
                    user_name=row.get("UserName") or "",
                    delivery_group_name=row.get("DeliveryGroupName") or "",
                )
                for row in reader
            ]
    except UnicodeDecodeError as e:
        raise InputFormatError(f"{input_csv}: not valid UTF-8 (save the CSV as UTF-8): {e}") from e
    except csv.Error as e:
        raise InputFormatError(f"{input_csv}: malformed CSV: {e}") from e


def report_path(input_csv: Path, now: Optional[datetime] = None, report_dir: Optional[Path] = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    directory = report_dir if report_dir is not None else input_csv.resolve().parent
    path = directory / f"AssignmentResults_{stamp}.csv"
    n = 1
    # never overwrite a report from an earlier run in the same second
    while path.exists():
        path = directory / f"AssignmentResults_{stamp}_{n}.csv"
        n += 1
    return path


def write_report(out_path: Path, outcomes: List[AssignmentOutcome]) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=REPORT_COLUMNS)
        w.writeheader()
        for o in outcomes:
            w.writerow({
                "MachineName": o.machine_name,
                "UserName": o.user_name,
                "DeliveryGroupName": o.delivery_group_name,
                "Status": o.status_text,
            })


def write_audit(out_path: Path, input_csv: Path, dry_run: bool, outcomes: List[AssignmentOutcome]) -> None:
    summary = summarize(outcomes)
    payload = {
        "timestamp": now_utc(),
        "input": str(input_csv),
        "dry_run": dry_run,
        "summary": {
            "total": summary.total,
            "success": summary.success,
            "failed": summary.failed,
            "skipped": summary.skipped,
        },
        "results": [
            {
                "machine_name": o.machine_name,
                "user_name": o.user_name,
                "delivery_group_name": o.delivery_group_name,
                "status": o.status.value,
                "status_text": o.status_text,
                "retryable": o.retryable,
            }
            for o in outcomes
        ],
    }
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
