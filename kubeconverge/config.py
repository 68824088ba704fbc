"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from kubeconverge.models.config import (
    APIConfig,
    EngineConfig,
    KubeConvergeConfig,
    KubernetesConfig,
    LogConfig,
    RetryConfig,
    StateConfig,
)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBECONVERGE_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float, min_val: float | None = None, max_val: float | None = None) -> float:
    val = float(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def load_config() -> KubeConvergeConfig:
    """Load configuration from KUBECONVERGE_* environment variables."""
    return KubeConvergeConfig(
        engine=EngineConfig(
            parallelism=_env_int("ENGINE_PARALLELISM", 10, min_val=0),
            rollback_on_failure=_env_bool("ENGINE_ROLLBACK_ON_FAILURE", False),
        ),
        retry=RetryConfig(
            max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 4, min_val=1, max_val=10),
            base_delay=_env_float("RETRY_BASE_DELAY", 1.0, min_val=0.0),
            max_delay=_env_float("RETRY_MAX_DELAY", 30.0, min_val=0.0),
            jitter=_env_float("RETRY_JITTER", 0.2, min_val=0.0, max_val=1.0),
        ),
        state=StateConfig(
            path=_env("STATE_PATH", ".kubeconverge/state.json"),
        ),
        kubernetes=KubernetesConfig(
            kubeconfig=os.path.expanduser(_env("KUBECONFIG", "")),
            context=_env("KUBE_CONTEXT", ""),
            helm_binary=_env("HELM_BINARY", "helm"),
        ),
        api=APIConfig(
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
