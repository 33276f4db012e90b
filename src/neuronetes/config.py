"""Operator configuration loaded from the environment."""

import logging
import os
from dataclasses import dataclass, field

from . import crd

logger = logging.getLogger(__name__)

ENV_PREFIX = "NEURONETES_"


def _env(name, default):
    return os.environ.get(ENV_PREFIX + name, default)


def _env_float(name, default):
    raw = _env(name, None)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}, using {default}")
        return default


@dataclass
class OperatorConfig:
    """Intervals, collaborator endpoints and runtime switches."""

    # Requeue intervals (seconds)
    steady_interval: float = 30.0
    pending_interval: float = 5.0
    error_interval: float = 30.0
    model_ready_interval: float = 60.0
    terminal_failure_interval: float = 300.0

    # Model loading
    placement_timeout: float = 600.0

    # Capacity backoff
    capacity_backoff_base: float = 10.0
    capacity_backoff_max: float = 300.0

    # Collaborators
    prometheus_url: str = "http://prometheus.monitoring:9090"
    weight_store_url: str = "http://weight-cache.neuronetes-system:8000"
    http_timeout: float = 10.0
    default_image: str = crd.DEFAULT_IMAGE

    # Runtime
    metrics_port: int = 8080
    namespaces: list = field(default_factory=list)
    log_level: str = "INFO"

    @property
    def clusterwide(self):
        return not self.namespaces

    @classmethod
    def from_env(cls):
        defaults = cls()
        namespaces = [ns.strip() for ns in _env("NAMESPACES", "").split(",") if ns.strip()]
        return cls(
            steady_interval=_env_float("STEADY_INTERVAL", defaults.steady_interval),
            pending_interval=_env_float("PENDING_INTERVAL", defaults.pending_interval),
            error_interval=_env_float("ERROR_INTERVAL", defaults.error_interval),
            model_ready_interval=_env_float("MODEL_READY_INTERVAL", defaults.model_ready_interval),
            terminal_failure_interval=_env_float(
                "TERMINAL_FAILURE_INTERVAL", defaults.terminal_failure_interval
            ),
            placement_timeout=_env_float("PLACEMENT_TIMEOUT", defaults.placement_timeout),
            capacity_backoff_base=_env_float("CAPACITY_BACKOFF_BASE", defaults.capacity_backoff_base),
            capacity_backoff_max=_env_float("CAPACITY_BACKOFF_MAX", defaults.capacity_backoff_max),
            prometheus_url=_env("PROMETHEUS_URL", defaults.prometheus_url),
            weight_store_url=_env("WEIGHT_STORE_URL", defaults.weight_store_url),
            http_timeout=_env_float("HTTP_TIMEOUT", defaults.http_timeout),
            default_image=_env("DEFAULT_IMAGE", defaults.default_image),
            metrics_port=int(_env_float("METRICS_PORT", defaults.metrics_port)),
            namespaces=namespaces,
            log_level=_env("LOG_LEVEL", defaults.log_level).upper(),
        )
