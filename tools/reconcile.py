#!/usr/bin/env python3
"""
Per-record reconciliation of desktop assignment requests against the broker.

For each request:
  validate -> find machine -> check delivery group -> normalize user
  -> find user -> skip if already assigned -> assign

Each request yields exactly one AssignmentOutcome; nothing raised by the
broker escapes reconcile_one().
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from broker_client import Broker, BrokerError, Machine


class OutcomeStatus(enum.Enum):
    SKIPPED_MISSING_INFO = "skipped_missing_info"
    FAILED_MACHINE_NOT_FOUND = "failed_machine_not_found"
    FAILED_WRONG_GROUP = "failed_wrong_group"
    SKIPPED_ALREADY_ASSIGNED = "skipped_already_assigned"
    SUCCESS_ASSIGNED = "success_assigned"
    FAILED_USER_NOT_FOUND = "failed_user_not_found"
    FAILED_ERROR = "failed_error"
    SKIPPED_DRY_RUN = "skipped_dry_run"

    @property
    def category(self) -> str:
        # success | failed | skipped
        return self.value.split("_", 1)[0]


@dataclass(frozen=True)
class AssignmentRequest:
    machine_name: str
    user_name: str
    delivery_group_name: str

    def is_complete(self) -> bool:
        fields = (self.machine_name, self.user_name, self.delivery_group_name)
        return all((f or "").strip() for f in fields)


@dataclass(frozen=True)
class AssignmentOutcome:
    machine_name: str
    user_name: str
    delivery_group_name: str
    status: OutcomeStatus
    detail: str = ""
    retryable: bool = False

    @property
    def status_text(self) -> str:
        s = self.status
        if s is OutcomeStatus.SKIPPED_MISSING_INFO:
            return "Skipped - Missing required information"
        if s is OutcomeStatus.FAILED_MACHINE_NOT_FOUND:
            return "Failed - Machine not found"
        if s is OutcomeStatus.FAILED_WRONG_GROUP:
            return (f"Failed - Machine not in delivery group '{self.delivery_group_name}'. "
                    f"Current group: '{self.detail}'")
        if s is OutcomeStatus.SKIPPED_ALREADY_ASSIGNED:
            return "Skipped - User already assigned"
        if s is OutcomeStatus.SUCCESS_ASSIGNED:
            return "Success - User assigned"
        if s is OutcomeStatus.FAILED_USER_NOT_FOUND:
            return "Failed - User not found"
        if s is OutcomeStatus.SKIPPED_DRY_RUN:
            return "Skipped - Dry run (user would be assigned)"
        return f"Failed - Error: {self.detail}"


@dataclass(frozen=True)
class Summary:
    total: int
    success: int
    failed: int
    skipped: int

    def line(self) -> str:
        return f"Total={self.total}, Success={self.success}, Failed={self.failed}, Skipped={self.skipped}"


def normalize_user_name(user_name: str, machine: Machine) -> str:
    if "\\" in user_name:
        return user_name
    return f"{machine.domain}\\{user_name}"


def _outcome(request: AssignmentRequest, status: OutcomeStatus, user_name: Optional[str] = None,
             detail: str = "", retryable: bool = False) -> AssignmentOutcome:
    return AssignmentOutcome(
        machine_name=request.machine_name,
        user_name=request.user_name if user_name is None else user_name,
        delivery_group_name=request.delivery_group_name,
        status=status,
        detail=detail,
        retryable=retryable,
    )


def _assign(broker: Broker, request: AssignmentRequest, machine: Machine, user_name: str,
            dry_run: bool) -> AssignmentOutcome:
    # any lookup failure means the account cannot be resolved
    try:
        user = broker.find_user(user_name)
    except Exception:
        user = None
    if user is None:
        return _outcome(request, OutcomeStatus.FAILED_USER_NOT_FOUND, user_name)

    try:
        assigned = {u.casefold() for u in broker.list_assigned_users(machine.uid)}
        if user_name.casefold() in assigned:
            return _outcome(request, OutcomeStatus.SKIPPED_ALREADY_ASSIGNED, user_name)
        if dry_run:
            return _outcome(request, OutcomeStatus.SKIPPED_DRY_RUN, user_name)
        broker.assign_user(user_name, machine.uid)
    except Exception as e:
        return _outcome(request, OutcomeStatus.FAILED_ERROR, user_name, str(e), getattr(e, "retryable", False))
    return _outcome(request, OutcomeStatus.SUCCESS_ASSIGNED, user_name)


def reconcile_one(broker: Broker, request: AssignmentRequest, dry_run: bool = False) -> AssignmentOutcome:
    if not request.is_complete():
        return _outcome(request, OutcomeStatus.SKIPPED_MISSING_INFO)

    try:
        try:
            machine = broker.find_machine(request.machine_name)
        except BrokerError:
            machine = None
        if machine is None:
            return _outcome(request, OutcomeStatus.FAILED_MACHINE_NOT_FOUND)

        if machine.desktop_group_name != request.delivery_group_name:
            return _outcome(request, OutcomeStatus.FAILED_WRONG_GROUP, detail=machine.desktop_group_name)

        user_name = normalize_user_name(request.user_name, machine)
        return _assign(broker, request, machine, user_name, dry_run)
    except Exception as e:
        return _outcome(request, OutcomeStatus.FAILED_ERROR, detail=str(e),
                        retryable=getattr(e, "retryable", False))


def reconcile_all(
    broker: Broker,
    assignment_requests: Iterable[AssignmentRequest],
    dry_run: bool = False,
    on_outcome: Optional[Callable[[int, int, AssignmentOutcome], None]] = None,
) -> List[AssignmentOutcome]:
    pending = list(assignment_requests)
    outcomes: List[AssignmentOutcome] = []
    for i, req in enumerate(pending, start=1):
        outcome = reconcile_one(broker, req, dry_run=dry_run)
        outcomes.append(outcome)
        if on_outcome is not None:
            on_outcome(i, len(pending), outcome)
    return outcomes


def summarize(outcomes: List[AssignmentOutcome]) -> Summary:
    return Summary(
        total=len(outcomes),
        success=sum(1 for o in outcomes if o.status.category == "success"),
        failed=sum(1 for o in outcomes if o.status.category == "failed"),
        skipped=sum(1 for o in outcomes if o.status.category == "skipped"),
    )


def failed_outcomes(outcomes: List[AssignmentOutcome]) -> List[AssignmentOutcome]:
    return [o for o in outcomes if o.status.category == "failed"]


def retryable_outcomes(outcomes: List[AssignmentOutcome]) -> List[AssignmentOutcome]:
    return [o for o in outcomes if o.retryable]
