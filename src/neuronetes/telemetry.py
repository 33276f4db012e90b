"""Prometheus metrics exported by the operator itself."""

import logging

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server

from .lifecycle import Event, Phase

logger = logging.getLogger(__name__)

PREFIX = "neuronetes"


class OperatorMetrics:
    """Container for all operator Prometheus metrics."""

    def __init__(self, registry=REGISTRY):
        pool_labels = ["namespace", "agentpool"]

        # Pool sizing
        self.desired_replicas = Gauge(
            f"{PREFIX}_pool_desired_replicas", "Serving replicas the reconciler targets",
            pool_labels, registry=registry,
        )
        self.ready_replicas = Gauge(
            f"{PREFIX}_pool_ready_replicas", "Replicas currently serving",
            pool_labels, registry=registry,
        )
        self.warm_replicas = Gauge(
            f"{PREFIX}_pool_warm_replicas", "Warm-pool replicas after the last tick",
            pool_labels, registry=registry,
        )
        self.scaling_decisions = Counter(
            f"{PREFIX}_scaling_decisions_total", "Scaling decisions that changed the target",
            ["direction"], registry=registry,
        )

        # Models
        self.model_phase = Gauge(
            f"{PREFIX}_model_phase", "1 for the current phase of each Model",
            ["namespace", "model", "phase"], registry=registry,
        )
        self.model_load_seconds = Histogram(
            f"{PREFIX}_model_load_seconds", "Time from entering Loading to Ready",
            buckets=(5, 15, 30, 60, 120, 300, 600, 1200, 3600), registry=registry,
        )

        # Errors
        self.reconcile_errors = Counter(
            f"{PREFIX}_reconcile_errors_total", "Reconcile ticks that ended in an error",
            ["resource", "kind"], registry=registry,
        )

    def observe_pool(self, pool, tick):
        labels = (pool.namespace, pool.name)
        self.desired_replicas.labels(*labels).set(tick.status["replicas"])
        self.ready_replicas.labels(*labels).set(tick.status["readyReplicas"])
        self.warm_replicas.labels(*labels).set(tick.status["prewarmedReplicas"])

        decision = tick.decision
        if decision.desired > decision.current:
            self.scaling_decisions.labels("up").inc()
        elif decision.desired < decision.current:
            self.scaling_decisions.labels("down").inc()

    def observe_model(self, model, tick):
        for phase in Phase:
            value = 1 if phase is tick.state.phase else 0
            self.model_phase.labels(model.namespace, model.name, phase.value).set(value)
        if any(event is Event.LOADED for _, event, _ in tick.transitions):
            self.model_load_seconds.observe(tick.state.load_time)

    def record_error(self, resource, kind):
        self.reconcile_errors.labels(resource, kind.value).inc()


def serve(port):
    start_http_server(port)
    logger.info(f"Serving operator metrics on :{port}")
