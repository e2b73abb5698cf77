from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Iterator


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class WorkloadStatus:
    name: str
    repository: str
    tag: str
    state: str  # created|updated|failed
    message: str
    failed_step: str | None = None
    updated_at: str = field(default_factory=utc_now)


class KeyedLocks:
    """One mutex per key, created on first use."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
        with lock:
            yield


class RuntimeState:
    """In-memory per-workload state shared between webhook deliveries."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.workload_locks = KeyedLocks()
        self.statuses: dict[str, WorkloadStatus] = {}  # workload name -> last outcome

    def set_status(self, st: WorkloadStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.statuses[st.name] = st

    def get_status(self, name: str) -> WorkloadStatus | None:
        with self.lock:
            return self.statuses.get(name)

    def list_statuses(self) -> list[WorkloadStatus]:
        with self.lock:
            return sorted(self.statuses.values(), key=lambda s: s.name)
