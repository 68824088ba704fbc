"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class EngineConfig:
    """Scheduler configuration."""

    parallelism: int = 10  # 0 = unbounded
    rollback_on_failure: bool = False


@dataclass
class RetryConfig:
    """Provider retry policy configuration."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2


@dataclass
class StateConfig:
    """Persisted state configuration."""

    path: str = ".kubeconverge/state.json"


@dataclass
class KubernetesConfig:
    """Provider context for Kubernetes and Helm adapters."""

    kubeconfig: str = ""
    context: str = ""
    helm_binary: str = "helm"


@dataclass
class APIConfig:
    """REST API configuration."""

    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class KubeConvergeConfig:
    """Top-level kubeconverge configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    state: StateConfig = field(default_factory=StateConfig)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
