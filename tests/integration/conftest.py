"""Shared fixtures for kubeconverge integration tests.

Provides an in-memory provider registered for the synthetic ``test`` kind
package, a memory state store, a retry policy that never sleeps, and
factories for the stacks the scenarios use. Nothing here talks to a real
cluster.
"""

from __future__ import annotations

import pytest

from kubeconverge.engine import Engine, RetryPolicy
from kubeconverge.models.config import EngineConfig
from kubeconverge.models.stack import Stack
from kubeconverge.providers import InMemoryProvider, ProviderRegistry
from kubeconverge.state import MemoryStateStore

NAMESPACE = "test:core/v1:Namespace"
DEPLOYMENT = "test:apps/v1:Deployment"
SERVICE = "test:core/v1:Service"
ROUTE = "test:gateway/v1:HTTPRoute"


# ---------------------------------------------------------------------------
# Retry policy helpers
# ---------------------------------------------------------------------------


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def fast_policy(max_attempts: int = 4) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=0.0, sleep=RecordingSleep())


# ---------------------------------------------------------------------------
# Stack factories
# ---------------------------------------------------------------------------


def make_app_stack(name: str = "demo-app", replicas: int = 2) -> Stack:
    """N -> D -> S -> R, with R reading S's port and N's name through references.

    N: namespace, D: deployment, S: service (explicit dependency on D),
    R: route whose backend port is a reference to S's first port.
    """
    stack = Stack(name)
    ns = stack.resource("ns", NAMESPACE, {"metadata": {"name": "demo"}})
    dep = stack.resource(
        "httpbin",
        DEPLOYMENT,
        {
            "metadata": {"name": "httpbin", "namespace": ns.ref("metadata.name")},
            "spec": {"replicas": replicas},
        },
    )
    svc = stack.resource(
        "httpbin-service",
        SERVICE,
        {
            "metadata": {"name": "httpbin", "namespace": ns.ref("metadata.name")},
            "spec": {"ports": [{"name": "http", "port": 8000, "targetPort": 80}]},
        },
        depends_on=[dep],
    )
    stack.resource(
        "httpbin-route",
        ROUTE,
        {
            "metadata": {"name": "httpbin", "namespace": ns.ref("metadata.name")},
            "spec": {
                "backendRefs": [
                    {"name": svc.ref("metadata.name"), "port": svc.ref("spec.ports[0].port")},
                ],
            },
        },
    )
    stack.export("namespace", ns.ref("metadata.name"))
    stack.export("servicePort", svc.ref("spec.ports[0].port"))
    return stack


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def registry(provider: InMemoryProvider) -> ProviderRegistry:
    reg = ProviderRegistry()
    reg.register("test", provider)
    return reg


@pytest.fixture
def state() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def engine(registry: ProviderRegistry, state: MemoryStateStore) -> Engine:
    return Engine(registry, state, EngineConfig(parallelism=0), policy=fast_policy())
