"""Configuration models for kubeloop.

Populated from ``KUBELOOP_*`` environment variables by
:func:`kubeloop.config.load_config`; defaults here are the documented
policy values.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

_LOG_LEVELS: frozenset[str] = frozenset({"debug", "info", "warning", "error"})


class LogConfig(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _valid_level(cls, value: str) -> str:
        normalised = value.lower()
        if normalised not in _LOG_LEVELS:
            raise ValueError(f"Invalid log level: {value!r}")
        return normalised


class APIConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1024, le=65535)


class StoreConfig(BaseModel):
    history_size: int = Field(default=10_000, ge=100, le=1_000_000)
    write_timeout_seconds: float = Field(default=5.0, gt=0, le=60)
    persistence_enabled: bool = False
    db_path: str = "/var/lib/kubeloop/store.db"


class ControllerConfig(BaseModel):
    workers: int = Field(default=4, ge=1, le=64)
    backoff_base_seconds: float = Field(default=1.0, gt=0, le=60)
    backoff_cap_seconds: float = Field(default=300.0, gt=0, le=3600)
    max_retries: int = Field(default=15, ge=1, le=100)


class SchedulerConfig(BaseModel):
    weight_node_affinity: int = Field(default=2, ge=0, le=100)
    weight_anti_affinity: int = Field(default=2, ge=0, le=100)
    weight_balance: int = Field(default=1, ge=0, le=100)
    bind_attempts: int = Field(default=3, ge=1, le=10)


class AutoscalerConfig(BaseModel):
    sync_period_seconds: float = Field(default=15.0, gt=0, le=600)
    tolerance: float = Field(default=0.1, ge=0, le=1)
    downscale_window_seconds: int = Field(default=300, ge=0, le=3600)


class ProbeConfig(BaseModel):
    poll_interval_seconds: float = Field(default=2.0, gt=0, le=300)


class KubeLoopConfig(BaseModel):
    log: LogConfig = Field(default_factory=LogConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    autoscaler: AutoscalerConfig = Field(default_factory=AutoscalerConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
