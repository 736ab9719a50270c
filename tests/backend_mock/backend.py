"""Failure-injecting wrapper around LocalBackend."""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from converge.backend import (
    BackendError,
    NameAvailability,
    ObservedResource,
    ZoneId,
)
from converge.local_backend import LocalBackend
from converge.models import ResourceRef


@dataclass
class InjectedFailure:
    """A failure armed for one resource and operation.

    ``remaining`` is how many calls fail before the operation succeeds;
    None fails every call.
    """

    message: str
    transient: bool = False
    remaining: int | None = None


class FakeBackend(LocalBackend):
    """LocalBackend with failure injection, latency and a call log."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._mock_lock = threading.Lock()
        self._failures: dict[tuple[str, str], InjectedFailure] = {}
        self._delays: dict[str, float] = {}
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    # -------------------------------------------------------------------------
    # Arming
    # -------------------------------------------------------------------------

    def fail(
        self,
        key: str,
        operation: str = "create",
        message: str = "injected failure",
        transient: bool = False,
        times: int | None = None,
    ) -> None:
        """Make ``operation`` on ``key`` raise BackendError."""
        self._failures[(key, operation)] = InjectedFailure(message, transient, times)

    def delay(self, key: str, seconds: float) -> None:
        """Add latency to every mutating call on ``key``."""
        self._delays[key] = seconds

    def calls_for(self, operation: str) -> list[str]:
        return [key for op, key in self.calls if op == operation]

    # -------------------------------------------------------------------------
    # Instrumentation
    # -------------------------------------------------------------------------

    def _enter(self, operation: str, key: str) -> None:
        with self._mock_lock:
            self.calls.append((operation, key))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            failure = self._failures.get((key, operation))
            if failure is not None and failure.remaining is not None:
                if failure.remaining <= 0:
                    failure = None
                else:
                    failure.remaining -= 1

        delay = self._delays.get(key)
        if delay:
            time.sleep(delay)

        if failure is not None:
            self._leave()
            raise BackendError(failure.message, transient=failure.transient)

    def _leave(self) -> None:
        with self._mock_lock:
            self.in_flight -= 1

    # -------------------------------------------------------------------------
    # Mutating operations
    # -------------------------------------------------------------------------

    def create(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource:
        self._enter("create", ref.key)
        try:
            return super().create(ref, properties, tags)
        finally:
            self._leave()

    def update(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource:
        self._enter("update", ref.key)
        try:
            return super().update(ref, properties, tags)
        finally:
            self._leave()

    def delete(self, ref: ResourceRef, purge: bool = False) -> None:
        self._enter("purge" if purge else "delete", ref.key)
        try:
            super().delete(ref, purge)
        finally:
            self._leave()

    def link_zone(self, zone: ZoneId, network_scope: str) -> None:
        self._enter("link_zone", zone.ref.key)
        try:
            super().link_zone(zone, network_scope)
        finally:
            self._leave()

    def upsert_record(self, zone: ZoneId, record_name: str, address: str) -> None:
        self._enter("upsert_record", f"{zone.ref.key}/{record_name}")
        try:
            super().upsert_record(zone, record_name, address)
        finally:
            self._leave()

    def delete_record(self, zone: ZoneId, record_name: str) -> None:
        self._enter("delete_record", f"{zone.ref.key}/{record_name}")
        try:
            super().delete_record(zone, record_name)
        finally:
            self._leave()

    # -------------------------------------------------------------------------
    # Reads (logged, never delayed)
    # -------------------------------------------------------------------------

    def get(self, ref: ResourceRef) -> ObservedResource | None:
        failure = self._failures.get((ref.key, "get"))
        if failure is not None:
            raise BackendError(failure.message, transient=failure.transient)
        return super().get(ref)

    def name_availability(self, ref: ResourceRef) -> NameAvailability:
        with self._mock_lock:
            self.calls.append(("name_availability", ref.key))
        return super().name_availability(ref)
