"""Environment-variable configuration loading.

Every setting is read from a ``KUBELOOP_*`` variable. Numeric values are
clamped to their documented bounds instead of rejected; values that cannot
be interpreted at all (a non-numeric port, an unknown log level) raise
``ValueError``.
"""

from __future__ import annotations

import os

from kubeloop.models.config import (
    APIConfig,
    AutoscalerConfig,
    ControllerConfig,
    KubeLoopConfig,
    LogConfig,
    ProbeConfig,
    SchedulerConfig,
    StoreConfig,
)

_TRUTHY: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSY: frozenset[str] = frozenset({"0", "false", "no", "off", ""})


def load_config() -> KubeLoopConfig:
    """Build a :class:`KubeLoopConfig` from the process environment."""
    return KubeLoopConfig(
        log=LogConfig(level=_env_str("KUBELOOP_LOG_LEVEL", "info")),
        api=APIConfig(
            host=_env_str("KUBELOOP_API_HOST", "0.0.0.0"),
            port=_env_int("KUBELOOP_API_PORT", 8080, 1024, 65535),
        ),
        store=StoreConfig(
            history_size=_env_int("KUBELOOP_STORE_HISTORY_SIZE", 10_000, 100, 1_000_000),
            write_timeout_seconds=_env_float("KUBELOOP_STORE_WRITE_TIMEOUT", 5.0, 0.1, 60.0),
            persistence_enabled=_env_bool("KUBELOOP_STORE_PERSISTENCE_ENABLED", False),
            db_path=_env_str("KUBELOOP_STORE_DB_PATH", "/var/lib/kubeloop/store.db"),
        ),
        controller=ControllerConfig(
            workers=_env_int("KUBELOOP_CONTROLLER_WORKERS", 4, 1, 64),
            backoff_base_seconds=_env_float("KUBELOOP_CONTROLLER_BACKOFF_BASE", 1.0, 0.01, 60.0),
            backoff_cap_seconds=_env_float("KUBELOOP_CONTROLLER_BACKOFF_CAP", 300.0, 1.0, 3600.0),
            max_retries=_env_int("KUBELOOP_CONTROLLER_MAX_RETRIES", 15, 1, 100),
        ),
        scheduler=SchedulerConfig(
            weight_node_affinity=_env_int("KUBELOOP_SCHEDULER_WEIGHT_NODE_AFFINITY", 2, 0, 100),
            weight_anti_affinity=_env_int("KUBELOOP_SCHEDULER_WEIGHT_ANTI_AFFINITY", 2, 0, 100),
            weight_balance=_env_int("KUBELOOP_SCHEDULER_WEIGHT_BALANCE", 1, 0, 100),
        ),
        autoscaler=AutoscalerConfig(
            sync_period_seconds=_env_float("KUBELOOP_AUTOSCALER_SYNC_PERIOD", 15.0, 1.0, 600.0),
            tolerance=_env_float("KUBELOOP_AUTOSCALER_TOLERANCE", 0.1, 0.0, 1.0),
            downscale_window_seconds=_env_int("KUBELOOP_AUTOSCALER_DOWNSCALE_WINDOW", 300, 0, 3600),
        ),
        probe=ProbeConfig(
            poll_interval_seconds=_env_float("KUBELOOP_PROBE_POLL_INTERVAL", 2.0, 0.1, 300.0),
        ),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _env_str(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from exc
    return max(minimum, min(maximum, value))


def _env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid number for {name}: {raw!r}") from exc
    return max(minimum, min(maximum, value))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalised = raw.strip().lower()
    if normalised in _TRUTHY:
        return True
    if normalised in _FALSY:
        return False
    raise ValueError(f"Invalid boolean for {name}: {raw!r}")
