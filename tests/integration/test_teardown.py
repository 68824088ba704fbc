"""Destroy runs and preview plans over state produced by a real apply."""

from __future__ import annotations

import pytest

from kubeconverge.engine import Engine
from kubeconverge.errors import CycleDetectedError, UnknownKindError
from kubeconverge.models.config import EngineConfig
from kubeconverge.models.resources import Operation, ResourceState
from kubeconverge.models.run import RunStatus
from kubeconverge.models.stack import Stack
from kubeconverge.providers import InMemoryProvider, ProviderRegistry
from kubeconverge.providers.memory import reject
from kubeconverge.state import MemoryStateStore

from .conftest import NAMESPACE, SERVICE, fast_policy, make_app_stack

# ---------------------------------------------------------------------------
# Destroy
# ---------------------------------------------------------------------------


class TestDestroy:
    async def test_deletes_dependents_first(self, engine: Engine, provider: InMemoryProvider) -> None:
        await engine.apply(make_app_stack())
        report = await engine.destroy()

        assert report.status == RunStatus.SUCCEEDED
        assert report.command == "destroy"
        deleted = provider.deleted()
        assert set(deleted) == {"ns", "httpbin", "httpbin-service", "httpbin-route"}
        for producer, consumer in [
            ("ns", "httpbin"),
            ("httpbin", "httpbin-service"),
            ("httpbin-service", "httpbin-route"),
        ]:
            assert provider.call("delete", consumer).finished <= provider.call("delete", producer).started
        assert all(r.operation == Operation.DELETE for r in report.resources.values())

    async def test_clears_state_and_exports(self, engine: Engine, state: MemoryStateStore) -> None:
        await engine.apply(make_app_stack())
        await engine.destroy()

        assert state.names() == []
        assert state.exports() == {}

    async def test_report_lists_resources_in_reverse_order(self, engine: Engine) -> None:
        await engine.apply(make_app_stack())
        names = list((await engine.destroy()).resources)
        assert names.index("httpbin-route") < names.index("httpbin-service") < names.index("httpbin")
        assert names[-1] == "ns"

    async def test_failed_delete_keeps_producers(self, state: MemoryStateStore) -> None:
        provider = InMemoryProvider(delete_failures={"httpbin-service": [reject("finalizer stuck")]})
        registry = ProviderRegistry()
        registry.register("test", provider)
        engine = Engine(registry, state, EngineConfig(), policy=fast_policy())
        await engine.apply(make_app_stack())
        report = await engine.destroy()

        assert report.status == RunStatus.FAILED
        assert report.resources["httpbin-route"].state == ResourceState.SUCCEEDED
        assert report.resources["httpbin-service"].state == ResourceState.FAILED
        for name in ("httpbin", "ns"):
            assert report.resources[name].caused_by == "httpbin-service"
        assert set(state.names()) == {"ns", "httpbin", "httpbin-service"}
        assert state.exports() != {}

    async def test_dependency_added_to_unchanged_resource_orders_teardown(self, state: MemoryStateStore) -> None:
        provider = InMemoryProvider(delays={"p": 0.05, "c": 0.05})
        registry = ProviderRegistry()
        registry.register("test", provider)
        engine = Engine(registry, state, EngineConfig(), policy=fast_policy())
        loose = Stack("edges")
        loose.resource("p", NAMESPACE, {"metadata": {"name": "p"}})
        loose.resource("c", SERVICE, {"metadata": {"name": "c"}})
        await engine.apply(loose)

        linked = Stack("edges")
        linked.resource("p", NAMESPACE, {"metadata": {"name": "p"}})
        linked.resource("c", SERVICE, {"metadata": {"name": "c"}}, depends_on=["p"])
        report = await engine.apply(linked)

        assert report.resources["c"].operation == Operation.SAME
        entry = state.get("c")
        assert entry is not None
        assert entry.dependencies == ["p"]

        await engine.destroy()
        assert provider.call("delete", "c").finished <= provider.call("delete", "p").started

    async def test_empty_state_is_a_successful_noop(self, engine: Engine, provider: InMemoryProvider) -> None:
        report = await engine.destroy()
        assert report.succeeded
        assert report.resources == {}
        assert provider.calls == []

    async def test_unknown_kind_in_state(self, engine: Engine, state: MemoryStateStore) -> None:
        await engine.apply(make_app_stack())
        entry = state.get("ns")
        entry.kind = "legacy:core/v1:Namespace"
        with pytest.raises(UnknownKindError):
            await engine.destroy()


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------


class TestPreview:
    def _ops(self, engine: Engine, stack: Stack) -> dict[str, Operation]:
        return {c.name: c.operation for c in engine.preview(stack).changes}

    def test_fresh_stack_creates_everything(self, engine: Engine, provider: InMemoryProvider) -> None:
        plan = engine.preview(make_app_stack())

        assert plan.count(Operation.CREATE) == 4
        assert provider.calls == []
        route = next(c for c in plan.changes if c.name == "httpbin-route")
        assert "awaits outputs" in route.reason

    async def test_converged_stack_is_unchanged(self, engine: Engine) -> None:
        await engine.apply(make_app_stack())
        ops = self._ops(engine, make_app_stack())
        assert set(ops.values()) == {Operation.SAME}

    async def test_property_change_is_an_update(self, engine: Engine, provider: InMemoryProvider) -> None:
        await engine.apply(make_app_stack(replicas=2))
        calls = len(provider.calls)
        ops = self._ops(engine, make_app_stack(replicas=5))

        assert ops["httpbin"] == Operation.UPDATE
        assert ops["httpbin-service"] == Operation.SAME
        assert len(provider.calls) == calls

    async def test_replacement_marks_consumers_as_changing(self, state: MemoryStateStore) -> None:
        provider = InMemoryProvider(replace_on=["metadata"])
        registry = ProviderRegistry()
        registry.register("test", provider)
        engine = Engine(registry, state, EngineConfig(), policy=fast_policy())
        await engine.apply(make_app_stack())

        stack = make_app_stack()
        renamed = Stack(stack.name)
        for desc in stack.descriptors:
            if desc.name == "ns":
                desc = desc.with_properties({"metadata": {"name": "demo-2"}})
            renamed.add(desc)
        ops = self._ops(engine, renamed)

        assert ops["ns"] == Operation.REPLACE
        assert ops["httpbin"] == Operation.UPDATE
        assert ops["httpbin-route"] == Operation.UPDATE

    async def test_consumer_of_updated_producer_notes_the_assumption(self, engine: Engine) -> None:
        await engine.apply(make_app_stack())
        stack = make_app_stack()
        changed = Stack(stack.name)
        for desc in stack.descriptors:
            if desc.name == "httpbin-service":
                ports = [{"name": "http", "port": 8000, "targetPort": 8080}]
                desc = desc.with_properties({**desc.properties, "spec": {"ports": ports}})
            changed.add(desc)
        changes = {c.name: c for c in engine.preview(changed).changes}

        assert changes["httpbin-service"].operation == Operation.UPDATE
        assert changes["httpbin-route"].operation == Operation.SAME
        assert changes["httpbin-route"].reason == "assumes outputs of 'httpbin-service' are unchanged"
        assert changes["httpbin"].reason == ""

    async def test_orphans_are_planned_for_deletion(self, engine: Engine) -> None:
        await engine.apply(make_app_stack())
        stack = Stack("demo-app", [d for d in make_app_stack().descriptors if d.name == "ns"])
        plan = engine.preview(stack)

        deletes = [c.name for c in plan.changes if c.operation == Operation.DELETE]
        assert set(deletes) == {"httpbin", "httpbin-service", "httpbin-route"}
        assert all(c.reason == "no longer declared" for c in plan.changes if c.operation == Operation.DELETE)

    def test_plan_serializes(self, engine: Engine) -> None:
        doc = engine.preview(make_app_stack()).to_dict()
        assert doc["stack"] == "demo-app"
        assert doc["summary"]["create"] == 4
        assert doc["summary"]["delete"] == 0

    def test_invalid_graph_is_rejected(self, engine: Engine) -> None:
        stack = Stack("t")
        stack.resource("a", NAMESPACE, {}, depends_on=["b"])
        stack.resource("b", NAMESPACE, {}, depends_on=["a"])
        with pytest.raises(CycleDetectedError):
            engine.preview(stack)
