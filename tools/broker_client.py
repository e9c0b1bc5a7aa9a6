#!/usr/bin/env python3
"""
Desktop broker connector (REST management API).

Implements the four calls the assignment loop needs:
- find_machine(name)
- find_user(normalized_name)
- list_assigned_users(machine_uid)
- assign_user(normalized_name, machine_uid)

Every failure leaves this module as a BrokerError carrying a BrokerErrorKind,
so callers never have to parse message text to tell a missing object from an
outage.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Set
from urllib.parse import quote

import requests

DEFAULT_TIMEOUT = 30.0
API_ROOT = "/cvad/manage"


class BrokerErrorKind(enum.Enum):
    NOT_FOUND = "not_found"
    AUTH = "auth"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class BrokerError(Exception):
    def __init__(self, message: str, kind: BrokerErrorKind = BrokerErrorKind.PERMANENT) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is BrokerErrorKind.TRANSIENT


@dataclass(frozen=True)
class Machine:
    uid: str
    machine_name: str  # DOMAIN\name as the broker reports it
    desktop_group_name: str

    @property
    def domain(self) -> str:
        if "\\" not in self.machine_name:
            raise ValueError(f"Machine name '{self.machine_name}' has no domain prefix")
        return self.machine_name.split("\\", 1)[0]


def classify_status(status_code: int) -> BrokerErrorKind:
    if status_code == 404:
        return BrokerErrorKind.NOT_FOUND
    if status_code in (401, 403):
        return BrokerErrorKind.AUTH
    if status_code == 429 or status_code >= 500:
        return BrokerErrorKind.TRANSIENT
    return BrokerErrorKind.PERMANENT


class Broker(Protocol):
    """
    The calls the assignment loop makes. BrokerConnector implements them over
    REST; tests use an in-memory stand-in.

    find_machine and find_user return None when nothing matches. Other
    failures raise BrokerError.
    """

    def find_machine(self, name: str) -> Optional[Machine]: ...

    def find_user(self, normalized_name: str) -> Optional[Dict[str, Any]]: ...

    def list_assigned_users(self, machine_uid: str) -> Set[str]: ...

    def assign_user(self, normalized_name: str, machine_uid: str) -> None: ...


def headers_json(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Accept": "application/json"}


class BrokerAuth:
    def __init__(self, broker_url: str, username: str, password: str,
                 session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.broker_url = broker_url.rstrip("/")
        self.username = username
        self.password = password
        self.session = session or requests.Session()
        self.timeout = timeout
        self._token: Optional[str] = None

    def token(self) -> str:
        if self._token:
            return self._token
        endpoint = f"{self.broker_url}{API_ROOT}/Tokens"
        try:
            r = self.session.post(endpoint, auth=(self.username, self.password), timeout=self.timeout)
        except requests.RequestException as e:
            raise BrokerError(f"Cannot reach broker at {self.broker_url}: {e}", BrokerErrorKind.TRANSIENT) from e
        if r.status_code >= 400:
            raise BrokerError(f"Broker authentication failed: HTTP {r.status_code}", classify_status(r.status_code))
        try:
            data = r.json()
        except ValueError:
            data = None
        tok = data.get("Token") if isinstance(data, dict) else None
        if not tok:
            raise BrokerError("Broker token response did not contain 'Token'", BrokerErrorKind.AUTH)
        self._token = tok
        return tok


class BrokerConnector:
    """
    REST connector against the broker's management API.

    Machines are addressed by name (short or DOMAIN\\name) on lookup and by
    the broker's Id afterwards.
    """

    def __init__(self, broker_url: str, token: str,
                 session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.broker_url = broker_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.broker_url}{API_ROOT}{path}"
        try:
            r = self.session.request(method, url, headers=headers_json(self.token), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise BrokerError(f"{method} {path}: {e}", BrokerErrorKind.TRANSIENT) from e
        if r.status_code >= 400:
            raise BrokerError(f"{method} {path}: HTTP {r.status_code} {r.text.strip()}".rstrip(),
                              classify_status(r.status_code))
        return r

    def _get_json(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        r = self._request("GET", path, **kwargs)
        try:
            obj = r.json()
        except ValueError as e:
            raise BrokerError(f"GET {path}: invalid JSON response", BrokerErrorKind.PERMANENT) from e
        if not isinstance(obj, dict):
            raise BrokerError(f"GET {path}: expected a JSON object, got {type(obj).__name__}",
                              BrokerErrorKind.PERMANENT)
        return obj

    def find_machine(self, name: str) -> Optional[Machine]:
        try:
            obj = self._get_json(f"/Machines/{quote(name, safe='')}")
        except BrokerError as e:
            if e.kind is BrokerErrorKind.NOT_FOUND:
                return None
            raise
        group = obj.get("DeliveryGroup") or {}
        return Machine(
            uid=str(obj.get("Id", "")),
            machine_name=obj.get("Name", ""),
            desktop_group_name=group.get("Name") or "",
        )

    def find_user(self, normalized_name: str) -> Optional[Dict[str, Any]]:
        obj = self._get_json("/Identity/Users", params={"accountName": normalized_name})
        items = obj.get("Items") or []
        return items[0] if items else None

    def list_assigned_users(self, machine_uid: str) -> Set[str]:
        obj = self._get_json(f"/Machines/{machine_uid}")
        return {u["SamName"] for u in obj.get("AssociatedUsers") or [] if u.get("SamName")}

    def assign_user(self, normalized_name: str, machine_uid: str) -> None:
        self._request("POST", f"/Machines/{machine_uid}/AssignUsers", json={"Users": [normalized_name]})
