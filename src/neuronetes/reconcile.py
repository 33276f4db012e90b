"""Core reconciliation logic.

Wires the model lifecycle and pool autoscaler to the cluster: reads the
declared resource, runs one tick under the identity's lock, persists the
resulting status and returns the delay before the next tick (None once the
resource is gone).
"""

import logging
import time

from . import crd
from .autoscaler import PoolReconciler
from .errors import ErrorKind, InvalidSpecError, ResourceGone, TransientError, classify
from .k8s import get_custom_object
from .lifecycle import ModelLifecycle, Phase, ReadinessIndex
from .metrics import PrometheusMetricsProvider
from .provisioner import KubernetesProvisioner
from .resources import AgentPool, Model
from .scheduling import KeyedLocks
from .status import StatusReporter, set_condition
from .weights import HttpWeightStore

logger = logging.getLogger(__name__)


class ReconcileBusy(TransientError):
    """Another tick for the same identity is in flight."""


class Controller:
    def __init__(self, custom_api, lifecycle, autoscaler, reporter, config, telemetry,
                 locks=None, clock=time.time):
        self.custom_api = custom_api
        self.lifecycle = lifecycle
        self.autoscaler = autoscaler
        self.reporter = reporter
        self.config = config
        self.telemetry = telemetry
        self.locks = locks or KeyedLocks()
        self.clock = clock

    @classmethod
    def from_config(cls, config, v1, custom_api, telemetry):
        readiness = ReadinessIndex()
        weight_store = HttpWeightStore(config.weight_store_url, timeout=config.http_timeout)
        metrics = PrometheusMetricsProvider(config.prometheus_url, timeout=config.http_timeout)
        provisioner = KubernetesProvisioner(v1, default_image=config.default_image)

        lifecycle = ModelLifecycle(weight_store, config, readiness=readiness)
        controller = cls(
            custom_api=custom_api,
            lifecycle=lifecycle,
            autoscaler=None,
            reporter=StatusReporter(custom_api),
            config=config,
            telemetry=telemetry,
        )
        controller.autoscaler = PoolReconciler(metrics, provisioner, controller.model_ready, config)
        return controller

    @property
    def readiness(self):
        return self.lifecycle.readiness

    def close(self):
        self.lifecycle.weight_store.close()
        self.autoscaler.metrics.close()

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------
    def reconcile_model(self, namespace, name):
        key = crd.model_id(namespace, name)
        with self.locks.hold(key) as acquired:
            if not acquired:
                raise ReconcileBusy(f"{key} is already being reconciled")

            try:
                body = get_custom_object(self.custom_api, crd.MODEL_PLURAL, namespace, name)
            except ResourceGone:
                logger.info(f"Model {namespace}/{name} not found, nothing to do")
                self.readiness.forget(key)
                return None

            try:
                model = Model.from_body(body)
            except InvalidSpecError as e:
                logger.error(f"Validation error for Model {namespace}/{name}: {e}")
                self._report_error(crd.MODEL_PLURAL, body, e, crd.COND_DEGRADED, True)
                return self.config.terminal_failure_interval

            try:
                tick = self.lifecycle.reconcile(model)
            except ResourceGone:
                return None
            except Exception as e:
                return self._report_error(crd.MODEL_PLURAL, body, e, crd.COND_DEGRADED, True)

            if tick.changed:
                self.reporter.persist(crd.MODEL_PLURAL, namespace, name, tick.state.to_status())
            self.telemetry.observe_model(model, tick)
            return tick.requeue_after

    def delete_model(self, body):
        meta = body.get("metadata") or {}
        key = crd.model_id(meta.get("namespace"), meta.get("name"))
        with self.locks.hold(key) as acquired:
            if not acquired:
                raise ReconcileBusy(f"{key} is being reconciled, retrying deletion")
            try:
                model = Model.from_body(body)
            except InvalidSpecError:
                self.readiness.forget(key)
            else:
                self.lifecycle.release(model)
        self.locks.discard(key)
        logger.info(f"Released Model {key}")

    def model_ready(self, ref):
        """Readiness signal consumed by pools."""
        phase = self.readiness.phase(ref.id)
        if phase is not None:
            return phase is Phase.READY

        # Not ticked in this process yet; fall back to the persisted phase.
        try:
            body = get_custom_object(self.custom_api, crd.MODEL_PLURAL, ref.namespace, ref.name)
        except ResourceGone:
            return False
        return (body.get("status") or {}).get("phase") == Phase.READY.value

    # ------------------------------------------------------------------
    # Agent pools
    # ------------------------------------------------------------------
    def reconcile_pool(self, namespace, name):
        key = crd.pool_id(namespace, name)
        with self.locks.hold(key) as acquired:
            if not acquired:
                raise ReconcileBusy(f"{key} is already being reconciled")

            try:
                body = get_custom_object(self.custom_api, crd.AGENTPOOL_PLURAL, namespace, name)
            except ResourceGone:
                logger.info(f"AgentPool {namespace}/{name} not found, nothing to do")
                return None

            try:
                pool = AgentPool.from_body(body)
            except InvalidSpecError as e:
                logger.error(f"Validation error for AgentPool {namespace}/{name}: {e}")
                self._report_error(crd.AGENTPOOL_PLURAL, body, e, crd.COND_SPEC_VALID, False)
                return self.config.terminal_failure_interval

            try:
                self.autoscaler.provisioner.ensure_service(pool)
                tick = self.autoscaler.reconcile(pool)
            except ResourceGone as e:
                # Deleted mid-tick: nothing more to do this round.
                logger.info(f"AgentPool {namespace}/{name} changed under us ({e}), skipping tick")
                return self.config.pending_interval
            except Exception as e:
                return self._report_error(crd.AGENTPOOL_PLURAL, body, e, crd.COND_READY, False)

            self.reporter.persist(crd.AGENTPOOL_PLURAL, namespace, name, tick.status)
            self.telemetry.observe_pool(pool, tick)
            return tick.requeue_after

    def delete_pool(self, body):
        meta = body.get("metadata") or {}
        pool = AgentPool(
            namespace=meta.get("namespace"),
            name=meta.get("name"),
            min_replicas=0,
            max_replicas=1,
            uid=meta.get("uid"),
        )
        with self.locks.hold(pool.id) as acquired:
            if not acquired:
                raise ReconcileBusy(f"{pool.id} is being reconciled, retrying deletion")
            self.autoscaler.teardown(pool)
        self.locks.discard(pool.id)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------
    def _report_error(self, plural, body, exc, condition, condition_status):
        """Surface a failed tick on the resource and pick the retry delay."""
        kind = classify(exc)
        meta = body.get("metadata") or {}
        namespace, name = meta.get("namespace"), meta.get("name")

        if kind is ErrorKind.UNKNOWN:
            logger.error(f"Reconciliation error for {plural}/{namespace}/{name}: {exc}", exc_info=True)
        else:
            logger.warning(f"{kind.value} error reconciling {plural}/{namespace}/{name}: {exc}")
        self.telemetry.record_error(plural, kind)

        conditions = set_condition(
            (body.get("status") or {}).get("conditions"),
            condition, condition_status, kind.value, str(exc), now=self.clock(),
        )
        self.reporter.persist(plural, namespace, name, {"conditions": conditions})

        if kind is ErrorKind.CAPACITY:
            return self.autoscaler.backoff.next_delay(crd.pool_id(namespace, name))
        if kind in (ErrorKind.TRANSIENT, ErrorKind.GONE):
            return self.config.pending_interval
        if kind is ErrorKind.INVALID_SPEC:
            return self.config.terminal_failure_interval
        return self.config.error_interval
