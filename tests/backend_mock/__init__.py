"""In-memory backend mock for engine tests.

Wraps the local backend with failure injection so the planner, reconciler
and teardown can be exercised without a cloud control plane.

Key Features:
- Permanent and transient failures per resource and operation
- Artificial latency per resource (for timeout and concurrency tests)
- Call log and peak in-flight counter

Usage:
    from backend_mock import FakeBackend

    backend = FakeBackend()
    backend.fail("endpoint/ScopeA/Endpoint1", operation="create")
    report = await Reconciler(backend, config).apply(plan)

    assert backend.calls_for("create") == ["scope/ScopeA", "private-zone/ScopeA/Zone1"]
"""

from .backend import FakeBackend, InjectedFailure

__all__ = ["FakeBackend", "InjectedFailure"]
