"""CLI tests: exit codes, report output and the state file round trip.

Adapters are injected through ``CliState`` so nothing touches a cluster;
the state file lives in ``tmp_path``.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import structlog
from click.testing import CliRunner, Result

from kubeconverge.cli.main import EXIT_OK, EXIT_RUN_FAILED, EXIT_UNUSABLE, CliState, cli
from kubeconverge.models.config import KubeConvergeConfig, RetryConfig
from kubeconverge.observability.logging import setup_logging
from kubeconverge.providers import InMemoryProvider, ProviderRegistry
from kubeconverge.providers.memory import reject

_DECLARATION = """\
name: demo-app
config:
  replicas: 2
resources:
  - name: ns
    kind: test:core/v1:Namespace
    properties:
      metadata: {name: demo}
  - name: httpbin
    kind: test:apps/v1:Deployment
    properties:
      metadata:
        name: httpbin
        namespace: ${ns.metadata.name}
      spec:
        replicas: ${config.replicas}
  - name: httpbin-service
    kind: test:core/v1:Service
    dependsOn: [httpbin]
    properties:
      metadata: {name: httpbin, namespace: !ref ns.metadata.name}
      spec:
        ports: [{name: http, port: 8000}]
exports:
  namespace: !ref ns.metadata.name
  url: http://${httpbin-service.metadata.name}.${ns.metadata.name}:${httpbin-service.spec.ports[0].port}
"""

_CYCLE = """\
name: loop
resources:
  - {name: a, kind: test:x/v1:A, dependsOn: [b]}
  - {name: b, kind: test:x/v1:A, dependsOn: [a]}
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Cli:
    def __init__(self, tmp_path: Path, provider: InMemoryProvider | None = None) -> None:
        self.tmp_path = tmp_path
        self.state_path = tmp_path / "state" / "state.json"
        self.provider = provider or InMemoryProvider()
        self.registry = ProviderRegistry()
        self.registry.register("test", self.provider)
        self.runner = CliRunner()

    def write(self, text: str, name: str = "stack.yaml") -> str:
        path = self.tmp_path / name
        path.write_text(text)
        return str(path)

    def invoke(self, *args: str, input: str | None = None) -> Result:
        config = KubeConvergeConfig(retry=RetryConfig(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=0.0))
        return self.runner.invoke(
            cli,
            ["--state", str(self.state_path), "--log-level", "warning", *args],
            obj=CliState(config=config, providers=self.registry),
            input=input,
        )


@pytest.fixture(autouse=True)
def _uncached_loggers(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep module loggers from caching the runner's stderr, which is closed after each invoke."""

    def _setup(level: str = "info", json: bool = True) -> None:
        setup_logging(level, json=json)
        structlog.configure(cache_logger_on_first_use=False)

    monkeypatch.setattr("kubeconverge.cli.main.setup_logging", _setup)


@pytest.fixture
def app(tmp_path: Path) -> _Cli:
    return _Cli(tmp_path)


# ---------------------------------------------------------------------------
# up
# ---------------------------------------------------------------------------


class TestUp:
    def test_success_prints_report(self, app: _Cli) -> None:
        result = app.invoke("up", app.write(_DECLARATION))

        assert result.exit_code == EXIT_OK, result.stderr
        report = json.loads(result.stdout)
        assert report["status"] == "succeeded"
        assert [r["name"] for r in report["resources"]] == ["ns", "httpbin", "httpbin-service"]
        assert report["exports"]["url"] == {"value": "http://httpbin.demo:8000"}
        assert "converging 3 resource(s)" in result.stderr
        assert app.provider.objects["httpbin"]["spec"]["replicas"] == 2

    def test_state_file_is_written(self, app: _Cli) -> None:
        app.invoke("up", app.write(_DECLARATION))

        doc = json.loads(app.state_path.read_text())
        assert doc["stack"] == "demo-app"
        assert set(doc["resources"]) == {"ns", "httpbin", "httpbin-service"}
        assert doc["exports"]["namespace"] == "demo"

    def test_second_run_is_a_noop(self, app: _Cli) -> None:
        path = app.write(_DECLARATION)
        app.invoke("up", path)
        calls = len(app.provider.calls)
        result = app.invoke("up", path)

        assert result.exit_code == EXIT_OK
        assert {r["operation"] for r in json.loads(result.stdout)["resources"]} == {"same"}
        assert len(app.provider.calls) == calls

    def test_failed_resource_exits_1(self, tmp_path: Path) -> None:
        app = _Cli(tmp_path, InMemoryProvider(failures={"httpbin": [reject("bad replicas")]}))
        result = app.invoke("up", app.write(_DECLARATION))

        assert result.exit_code == EXIT_RUN_FAILED
        report = json.loads(result.stdout)
        states = {r["name"]: (r["state"], r["caused_by"]) for r in report["resources"]}
        assert states == {
            "ns": ("succeeded", None),
            "httpbin": ("failed", None),
            "httpbin-service": ("failed", "httpbin"),
        }
        assert "error" in report["exports"]["url"]

    def test_cycle_exits_2_without_calls(self, app: _Cli) -> None:
        result = app.invoke("up", app.write(_CYCLE))

        assert result.exit_code == EXIT_UNUSABLE
        assert "cycle" in result.stderr.lower()
        assert app.provider.calls == []

    def test_unknown_kind_exits_2(self, app: _Cli) -> None:
        result = app.invoke("up", app.write("name: t\nresources:\n  - {name: b, kind: aws:s3:Bucket}\n"))
        assert result.exit_code == EXIT_UNUSABLE
        assert "aws:s3:Bucket" in result.stderr

    def test_bad_declaration_exits_2(self, app: _Cli) -> None:
        result = app.invoke("up", app.write("name: t\nresources: {oops: 1}\n"))
        assert result.exit_code == EXIT_UNUSABLE
        assert result.stderr.startswith("error:")

    def test_missing_file_exits_2(self, app: _Cli, tmp_path: Path) -> None:
        result = app.invoke("up", str(tmp_path / "absent.yaml"))
        assert result.exit_code == EXIT_UNUSABLE

    def test_corrupt_state_exits_2(self, app: _Cli) -> None:
        app.state_path.parent.mkdir(parents=True)
        app.state_path.write_text("{not json")
        result = app.invoke("up", app.write(_DECLARATION))

        assert result.exit_code == EXIT_UNUSABLE
        assert app.provider.calls == []


# ---------------------------------------------------------------------------
# preview / outputs / destroy
# ---------------------------------------------------------------------------


class TestOtherCommands:
    def test_preview(self, app: _Cli) -> None:
        path = app.write(_DECLARATION)
        result = app.invoke("preview", path)

        assert result.exit_code == EXIT_OK
        plan = json.loads(result.stdout)
        assert plan["summary"]["create"] == 3
        assert app.provider.calls == []
        assert not app.state_path.exists()

    def test_outputs(self, app: _Cli) -> None:
        app.invoke("up", app.write(_DECLARATION))

        plain = app.invoke("outputs")
        assert plain.exit_code == EXIT_OK
        assert "namespace: demo" in plain.stdout.splitlines()
        assert json.loads(app.invoke("outputs", "--json").stdout) == {
            "namespace": "demo",
            "url": "http://httpbin.demo:8000",
        }

    def test_destroy(self, app: _Cli) -> None:
        app.invoke("up", app.write(_DECLARATION))
        result = app.invoke("destroy", "--yes")

        assert result.exit_code == EXIT_OK
        assert json.loads(result.stdout)["command"] == "destroy"
        assert app.provider.deleted()[-1] == "ns"
        assert json.loads(app.state_path.read_text())["resources"] == {}

    def test_destroy_asks_for_confirmation(self, app: _Cli) -> None:
        app.invoke("up", app.write(_DECLARATION))
        result = app.invoke("destroy", input="n\n")

        assert result.exit_code != EXIT_OK
        assert app.provider.deleted() == []

    def test_destroy_empty_state(self, app: _Cli) -> None:
        result = app.invoke("destroy")
        assert result.exit_code == EXIT_OK
        assert "nothing to destroy" in result.stderr
