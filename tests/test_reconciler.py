"""Tests for the apply engine."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest
from backend_mock import FakeBackend

from converge.backend import ObservedResource, PrivateZone, ZoneId
from converge.config import EngineConfig
from converge.graph import build_graph
from converge.models import DeclaredState, ResourceKind, ResourceRef
from converge.plan import Action, Plan, PlanStep
from converge.planner import Planner, capture_snapshot, ownership_tags
from converge.reconciler import ApplyOutcome, Reconciler, StepStatus

SCOPE_A = ResourceRef(ResourceKind.SCOPE, None, "ScopeA")
VAULT = ResourceRef(ResourceKind.SECRET_STORE, "ScopeA", "kv-app")
ZONE_KEY = "private-zone/ScopeA/Zone1"
ENDPOINT_KEY = "endpoint/ScopeA/Endpoint1"


async def plan_for(backend: FakeBackend, state: DeclaredState) -> Plan:
    graph = build_graph(state)
    snapshot = await capture_snapshot(backend, graph, state.deployment_name)
    return Planner().plan(graph, snapshot, state.deployment_name)


def with_extra_scopes(document: dict[str, Any], count: int) -> DeclaredState:
    document["resources"].extend(
        {"kind": "scope", "name": f"Extra{i}"} for i in range(count)
    )
    return DeclaredState.model_validate(document)


def store_state(properties: dict[str, Any]) -> DeclaredState:
    return DeclaredState.model_validate(
        {
            "metadata": {"name": "demo"},
            "requiredTags": [],
            "resources": [
                {"kind": "scope", "name": "ScopeA"},
                {
                    "kind": "secret-store",
                    "scope": "ScopeA",
                    "name": "kv-app",
                    "declaredProperties": properties,
                },
            ],
        }
    )


class BrokenCreateBackend(FakeBackend):
    """Raises a non-backend error when creating one resource."""

    def __init__(self, broken_key: str) -> None:
        super().__init__()
        self.broken_key = broken_key

    def create(
        self, ref: ResourceRef, properties: Mapping[str, Any], tags: Mapping[str, str]
    ) -> ObservedResource:
        if ref.key == self.broken_key:
            raise RuntimeError("malformed response")
        return super().create(ref, properties, tags)


class TestApply:
    """Tests for successful apply runs."""

    @pytest.mark.asyncio
    async def test_scenario_applies_in_dependency_order(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        plan = await plan_for(backend, scenario_state)

        report = await Reconciler(backend, fast_config).apply(plan)

        assert report.outcome == ApplyOutcome.SUCCEEDED
        assert backend.calls_for("create") == ["scope/ScopeA", ZONE_KEY, ENDPOINT_KEY]
        assert set(report.baseline) == {"scope/ScopeA", ZONE_KEY, ENDPOINT_KEY}

        [zone] = backend.list_zones()
        assert zone.is_linked("ScopeA")
        assert zone.lookup("endpoint1") == ("10.1.0.4",)

    @pytest.mark.asyncio
    async def test_second_apply_is_noop(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        """Test that re-planning after a successful apply yields only NoOp steps."""
        await Reconciler(backend, fast_config).apply(await plan_for(backend, scenario_state))
        backend.calls.clear()

        plan = await plan_for(backend, scenario_state)
        report = await Reconciler(backend, fast_config).apply(plan)

        assert plan.has_changes is False
        assert report.outcome == ApplyOutcome.SUCCEEDED
        assert [op for op, _ in backend.calls if op != "name_availability"] == []

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(
        self, backend: FakeBackend, scenario_document: dict[str, Any]
    ) -> None:
        state = with_extra_scopes(scenario_document, 6)
        for i in range(6):
            backend.delay(f"scope/Extra{i}", 0.05)
        config = EngineConfig(
            apply_concurrency=2,
            retry_backoff_base_seconds=0.0,
            registration_propagation_seconds=0.0,
        )

        report = await Reconciler(backend, config).apply(await plan_for(backend, state))

        assert report.outcome == ApplyOutcome.SUCCEEDED
        assert backend.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_registration_not_visible_is_warning(
        self, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        class LaggingBackend(FakeBackend):
            def list_zones(self) -> list[PrivateZone]:
                return [PrivateZone(z.zone, z.links, {}) for z in super().list_zones()]

        backend = LaggingBackend()

        report = await Reconciler(backend, fast_config).apply(
            await plan_for(backend, scenario_state)
        )

        result = report.results[ENDPOINT_KEY]
        assert result.status == StepStatus.SUCCEEDED
        assert result.warnings == ["Record 'endpoint1' not yet visible in zone Zone1 after 0.0s"]


class TestFailures:
    """Tests for failure propagation and retries."""

    @pytest.mark.asyncio
    async def test_failure_skips_dependents_only(
        self, backend: FakeBackend, scenario_document: dict[str, Any], fast_config: EngineConfig
    ) -> None:
        state = with_extra_scopes(scenario_document, 1)
        backend.fail(ZONE_KEY, operation="create", message="quota exceeded")

        report = await Reconciler(backend, fast_config).apply(await plan_for(backend, state))

        assert report.outcome == ApplyOutcome.PARTIAL_FAILURE
        assert report.results["scope/ScopeA"].status == StepStatus.SUCCEEDED
        assert report.results["scope/Extra0"].status == StepStatus.SUCCEEDED
        assert report.results[ZONE_KEY].status == StepStatus.FAILED
        assert report.results[ZONE_KEY].error == "quota exceeded"
        assert report.results[ENDPOINT_KEY].status == StepStatus.SKIPPED
        assert report.results[ENDPOINT_KEY].error == f"Dependency did not succeed: {ZONE_KEY}"
        assert ENDPOINT_KEY not in backend.calls_for("create")

    @pytest.mark.asyncio
    async def test_rerun_after_partial_failure_converges(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        backend.fail(ZONE_KEY, operation="create", times=1)
        first = await Reconciler(backend, fast_config).apply(
            await plan_for(backend, scenario_state)
        )
        assert first.outcome == ApplyOutcome.PARTIAL_FAILURE

        second_plan = await plan_for(backend, scenario_state)
        second = await Reconciler(backend, fast_config).apply(second_plan)

        assert second_plan.step("scope/ScopeA").action == Action.NOOP
        assert second.outcome == ApplyOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        backend.fail("scope/ScopeA", operation="create", transient=True, times=2)

        report = await Reconciler(backend, fast_config).apply(
            await plan_for(backend, scenario_state)
        )

        assert report.outcome == ApplyOutcome.SUCCEEDED
        assert report.results["scope/ScopeA"].attempts == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self, backend: FakeBackend, scenario_state: DeclaredState
    ) -> None:
        backend.fail("scope/ScopeA", operation="create", message="throttled", transient=True)
        config = EngineConfig(
            max_step_retries=1,
            retry_backoff_base_seconds=0.0,
            registration_propagation_seconds=0.0,
        )

        report = await Reconciler(backend, config).apply(await plan_for(backend, scenario_state))

        result = report.results["scope/ScopeA"]
        assert result.status == StepStatus.FAILED
        assert result.attempts == 2
        assert report.skipped == [ZONE_KEY, ENDPOINT_KEY]

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        backend.fail("scope/ScopeA", operation="create", message="forbidden")

        report = await Reconciler(backend, fast_config).apply(
            await plan_for(backend, scenario_state)
        )

        assert report.results["scope/ScopeA"].attempts == 1
        assert backend.calls_for("create") == ["scope/ScopeA"]

    @pytest.mark.asyncio
    async def test_step_timeout_is_failure(
        self, backend: FakeBackend, scenario_state: DeclaredState
    ) -> None:
        backend.delay("scope/ScopeA", 1.5)
        config = EngineConfig(
            step_timeout_seconds=1,
            retry_backoff_base_seconds=0.0,
            registration_propagation_seconds=0.0,
        )

        report = await Reconciler(backend, config).apply(await plan_for(backend, scenario_state))

        result = report.results["scope/ScopeA"]
        assert result.status == StepStatus.FAILED
        assert result.error is not None
        assert "timed out" in result.error
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_deadline_covers_all_attempts(
        self, backend: FakeBackend, scenario_state: DeclaredState
    ) -> None:
        """Test that retries stop once the step's overall timeout is spent."""
        backend.delay("scope/ScopeA", 0.6)
        backend.fail("scope/ScopeA", operation="create", message="throttled", transient=True)
        config = EngineConfig(
            step_timeout_seconds=1,
            max_step_retries=3,
            retry_backoff_base_seconds=0.0,
            registration_propagation_seconds=0.0,
        )

        report = await Reconciler(backend, config).apply(await plan_for(backend, scenario_state))

        result = report.results["scope/ScopeA"]
        assert result.status == StepStatus.FAILED
        assert result.error is not None
        assert "timed out" in result.error
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_step_only(
        self, scenario_document: dict[str, Any], fast_config: EngineConfig
    ) -> None:
        backend = BrokenCreateBackend(ZONE_KEY)
        state = with_extra_scopes(scenario_document, 1)

        report = await Reconciler(backend, fast_config).apply(await plan_for(backend, state))

        assert report.outcome == ApplyOutcome.PARTIAL_FAILURE
        assert report.results[ZONE_KEY].status == StepStatus.FAILED
        assert report.results[ZONE_KEY].error == "Unexpected error: malformed response"
        assert report.results[ENDPOINT_KEY].status == StepStatus.SKIPPED
        assert report.results["scope/Extra0"].status == StepStatus.SUCCEEDED


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_before_start_skips_everything(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        plan = await plan_for(backend, scenario_state)
        reconciler = Reconciler(backend, fast_config)
        reconciler.cancel()

        report = await reconciler.apply(plan)

        assert report.outcome == ApplyOutcome.CANCELLED
        assert report.skipped == plan.keys
        assert backend.calls_for("create") == []

    @pytest.mark.asyncio
    async def test_in_flight_step_finishes(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        """Test that cancellation lets the running step finish and skips the rest."""
        backend.delay("scope/ScopeA", 0.3)
        cancel_event = asyncio.Event()
        reconciler = Reconciler(backend, fast_config, cancel_event)
        plan = await plan_for(backend, scenario_state)

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            cancel_event.set()

        _, report = await asyncio.gather(cancel_soon(), reconciler.apply(plan))

        assert report.outcome == ApplyOutcome.CANCELLED
        assert report.results["scope/ScopeA"].status == StepStatus.SUCCEEDED
        assert report.results[ZONE_KEY].status == StepStatus.SKIPPED
        assert report.results[ENDPOINT_KEY].status == StepStatus.SKIPPED


class TestStepKinds:
    """Tests for delete and replace steps."""

    @pytest.mark.asyncio
    async def test_delete_endpoint_removes_record(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        await Reconciler(backend, fast_config).apply(await plan_for(backend, scenario_state))
        endpoint = scenario_state.get(ENDPOINT_KEY)
        assert endpoint is not None
        plan = Plan(
            deployment="demo",
            steps=(
                PlanStep(
                    endpoint.ref, Action.DELETE, "test", destructive=True, resource=endpoint
                ),
            ),
        )

        report = await Reconciler(backend, fast_config).apply(plan)

        assert report.outcome == ApplyOutcome.SUCCEEDED
        assert backend.get(endpoint.ref) is None
        assert backend.list_zones()[0].lookup("endpoint1") == ()

    @pytest.mark.asyncio
    async def test_replace_deletes_then_creates(
        self, backend: FakeBackend, fast_config: EngineConfig
    ) -> None:
        scope = ResourceRef(ResourceKind.SCOPE, None, "ScopeA")
        network = ResourceRef(ResourceKind.NETWORK, "ScopeA", "net1")
        tags = ownership_tags("demo")
        backend.create(scope, {}, tags)
        backend.create(network, {"location": "eastus"}, tags)
        backend.calls.clear()
        plan = Plan(
            deployment="demo",
            steps=(
                PlanStep(
                    network,
                    Action.REPLACE,
                    "Immutable properties changed: location",
                    destructive=True,
                    properties={"location": "westeurope"},
                    tags=tags,
                ),
            ),
        )

        report = await Reconciler(backend, fast_config).apply(plan)

        assert report.outcome == ApplyOutcome.SUCCEEDED
        assert backend.calls == [("delete", "network/ScopeA/net1"), ("create", "network/ScopeA/net1")]
        observed = backend.get(network)
        assert observed is not None
        assert observed.properties["location"] == "westeurope"

    @pytest.mark.asyncio
    async def test_replace_purges_unprotected_store(
        self, backend: FakeBackend, fast_config: EngineConfig
    ) -> None:
        """Test that re-creating a store frees its name from the soft-deleted copy."""
        tags = ownership_tags("demo")
        backend.create(SCOPE_A, {}, tags)
        backend.create(VAULT, {"location": "westeurope"}, tags)

        plan = await plan_for(backend, store_state({"location": "northeurope"}))
        step = plan.step(VAULT.key)
        report = await Reconciler(backend, fast_config).apply(plan)

        assert step.action == Action.REPLACE
        assert step.purge is True
        assert report.outcome == ApplyOutcome.SUCCEEDED
        assert backend.calls_for("purge") == [VAULT.key]
        observed = backend.get(VAULT)
        assert observed is not None
        assert observed.soft_deleted is False
        assert observed.properties["location"] == "northeurope"

    @pytest.mark.asyncio
    async def test_replace_refuses_purge_protected_store(
        self, backend: FakeBackend, fast_config: EngineConfig
    ) -> None:
        tags = ownership_tags("demo")
        backend.create(SCOPE_A, {}, tags)
        backend.create(VAULT, {"location": "westeurope", "enablePurgeProtection": True}, tags)

        plan = await plan_for(
            backend, store_state({"location": "northeurope", "enablePurgeProtection": True})
        )
        report = await Reconciler(backend, fast_config).apply(plan)

        result = report.results[VAULT.key]
        assert plan.step(VAULT.key).purge is False
        assert result.status == StepStatus.FAILED
        assert result.attempts == 1
        assert result.error is not None
        assert "soft-deleted copy" in result.error
        assert backend.calls_for("delete") == []
        observed = backend.get(VAULT)
        assert observed is not None
        assert observed.soft_deleted is False
        assert observed.properties["location"] == "westeurope"

    @pytest.mark.asyncio
    async def test_zone_record_upsert_is_idempotent(
        self, backend: FakeBackend, scenario_state: DeclaredState, fast_config: EngineConfig
    ) -> None:
        plan = await plan_for(backend, scenario_state)
        await Reconciler(backend, fast_config).apply(plan)
        zone = ZoneId.from_ref(ResourceRef(ResourceKind.PRIVATE_ZONE, "ScopeA", "Zone1"))
        address = backend.list_zones()[0].lookup("endpoint1")

        backend.upsert_record(zone, "endpoint1", address[0])

        assert backend.list_zones()[0].lookup("endpoint1") == address
