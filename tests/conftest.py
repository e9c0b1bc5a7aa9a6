"""
Shared fixtures: an in-memory broker implementing the connector calls used by
the assignment loop.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

import pytest

from broker_client import BrokerError, BrokerErrorKind, Machine


class FakeBroker:
    def __init__(self) -> None:
        self.machines: Dict[str, Machine] = {}
        self.users: Set[str] = set()
        self.assigned: Dict[str, Set[str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[str, BrokerError] = {}

    def add_machine(self, full_name: str, group: str, uid: Optional[str] = None) -> Machine:
        m = Machine(uid=uid or f"uid-{len(self.machines) + 1}", machine_name=full_name, desktop_group_name=group)
        self.machines[full_name] = m
        self.assigned.setdefault(m.uid, set())
        return m

    def fail(self, call: str, message: str, kind: BrokerErrorKind = BrokerErrorKind.PERMANENT) -> None:
        self.failures[call] = BrokerError(message, kind)

    def _maybe_fail(self, call: str, arg: str) -> None:
        self.calls.append((call, arg))
        if call in self.failures:
            raise self.failures[call]

    def find_machine(self, name: str) -> Optional[Machine]:
        self._maybe_fail("find_machine", name)
        for full, m in self.machines.items():
            if full == name or full.split("\\", 1)[-1] == name:
                return m
        return None

    def find_user(self, normalized_name: str) -> Optional[dict]:
        self._maybe_fail("find_user", normalized_name)
        if normalized_name in self.users:
            return {"SamName": normalized_name}
        raise BrokerError(f"User {normalized_name} not found", BrokerErrorKind.NOT_FOUND)

    def list_assigned_users(self, machine_uid: str) -> Set[str]:
        self._maybe_fail("list_assigned_users", machine_uid)
        return set(self.assigned[machine_uid])

    def assign_user(self, normalized_name: str, machine_uid: str) -> None:
        self._maybe_fail("assign_user", normalized_name)
        self.assigned[machine_uid].add(normalized_name)


@pytest.fixture
def broker() -> FakeBroker:
    b = FakeBroker()
    b.add_machine("CORP\\VDI-001", "Sales")
    b.add_machine("CORP\\VDI-002", "Engineering")
    b.users.update({"CORP\\jdoe", "CORP\\asmith", "OTHER\\bwong"})
    return b


@pytest.fixture
def write_csv(tmp_path):
    def _write(text: str, name: str = "assignments.csv"):
        p = tmp_path / name
        p.write_text(text, encoding="utf-8")
        return p
    return _write
