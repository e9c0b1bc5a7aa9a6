#!/usr/bin/env python3
"""
Bulk-assign virtual desktops to users from a CSV file.

Usage:
  export BROKER_URL="https://broker.example.corp"
  export BROKER_USER="apiuser"
  export BROKER_PASS="apipass"
  python tools/assign_desktops.py --input assignments.csv
  python tools/assign_desktops.py --input assignments.csv --dry-run --audit-out out/audit_assign.json

Input CSV columns:
  MachineName,UserName,DeliveryGroupName

A results report (AssignmentResults_<timestamp>.csv) is written next to the
input unless --report-dir is given. Exit codes: 0 all records ok or skipped,
1 at least one record failed, 2 precondition failure (nothing processed).
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from assignment_csv import read_requests, report_path, write_audit, write_report
from broker_client import DEFAULT_TIMEOUT, BrokerAuth, BrokerConnector, BrokerError
from reconcile import AssignmentOutcome, failed_outcomes, reconcile_all, retryable_outcomes, summarize


@dataclass
class BrokerConfig:
    url: str
    username: str
    password: str
    timeout: float = DEFAULT_TIMEOUT


def load_config(timeout: Optional[float] = None) -> BrokerConfig:
    url = os.environ.get("BROKER_URL", "").strip()
    user = os.environ.get("BROKER_USER", "").strip()
    password = os.environ.get("BROKER_PASS", "").strip()
    if not url or not user or not password:
        raise ValueError("Missing env vars: BROKER_URL, BROKER_USER, BROKER_PASS are required.")
    if timeout is None:
        raw = os.environ.get("BROKER_TIMEOUT", "").strip()
        try:
            timeout = float(raw) if raw else DEFAULT_TIMEOUT
        except ValueError:
            raise ValueError(f"BROKER_TIMEOUT must be a number of seconds, got {raw!r}") from None
    return BrokerConfig(url=url, username=user, password=password, timeout=timeout)


def connect(cfg: BrokerConfig) -> BrokerConnector:
    auth = BrokerAuth(cfg.url, cfg.username, cfg.password, timeout=cfg.timeout)
    return BrokerConnector(cfg.url, auth.token(), session=auth.session, timeout=cfg.timeout)


def print_outcome(index: int, total: int, outcome: AssignmentOutcome) -> None:
    prefix = {"success": "OK", "failed": "FAIL", "skipped": "SKIP"}[outcome.status.category]
    print(f"[{index}/{total}] {prefix}: {outcome.machine_name} -> {outcome.user_name}: {outcome.status_text}")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Bulk-assign virtual desktops to users from CSV.")
    ap.add_argument("--input", required=True, type=Path, help="CSV with MachineName,UserName,DeliveryGroupName")
    ap.add_argument("--report-dir", type=Path, required=False, help="Directory for the results CSV (default: input dir)")
    ap.add_argument("--audit-out", type=Path, required=False, help="Optional JSON audit log path")
    ap.add_argument("--dry-run", action="store_true", help="Check every record but do not assign")
    ap.add_argument("--timeout", type=float, required=False, help="Broker request timeout in seconds")
    args = ap.parse_args(argv)

    if not args.input.exists() or not args.input.is_file():
        print(f"Input CSV not found: {args.input}")
        return 2

    try:
        assignment_requests = read_requests(args.input)
    except (ValueError, OSError) as e:
        # MissingColumnsError, InputFormatError or an unreadable file
        print(f"Cannot read input CSV: {e}")
        return 2

    try:
        cfg = load_config(args.timeout)
    except ValueError as e:
        print(str(e))
        return 2

    try:
        broker = connect(cfg)
    except BrokerError as e:
        print(f"Broker connection failed: {e}")
        return 2

    if args.dry_run:
        print("WARN: dry run, no assignments will be made.")
    print(f"Processing {len(assignment_requests)} records from {args.input}")

    try:
        outcomes = reconcile_all(broker, assignment_requests, dry_run=args.dry_run, on_outcome=print_outcome)
    finally:
        broker.close()

    out_path = report_path(args.input, report_dir=args.report_dir)
    write_report(out_path, outcomes)
    print(f"Wrote report: {out_path}")
    if args.audit_out:
        write_audit(args.audit_out, args.input, args.dry_run, outcomes)
        print(f"Wrote audit log: {args.audit_out}")

    print(summarize(outcomes).line())

    failed = failed_outcomes(outcomes)
    if failed:
        for o in failed:
            print(f"FAIL: {o.machine_name} -> {o.user_name}: {o.status_text}")
        retry = retryable_outcomes(outcomes)
        if retry:
            print(f"WARN: {len(retry)} failure(s) look transient and may succeed on re-run.")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
