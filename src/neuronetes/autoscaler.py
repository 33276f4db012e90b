"""Agent pool autoscaling reconciler.

One tick reads the pool's bounds and triggers, queries the metrics provider,
computes the serving target and the warm-pool target, and turns the
difference from the observed replicas into provisioning intents. Replicas
are only moved into serving once every Model the pool depends on is Ready.
"""

import logging
import time
from dataclasses import dataclass, field

from . import crd
from .errors import CapacityError
from .provisioner import TerminateResult
from .resources import ReplicaState
from .scheduling import Backoff, requeue_after
from .status import set_condition, to_timestamp

logger = logging.getLogger(__name__)

# Scale-down victims: cheapest to lose first.
_VICTIM_ORDER = {
    ReplicaState.PROVISIONING: 0,
    ReplicaState.WARM: 1,
    ReplicaState.SERVING: 2,
}
_LEAVING = (ReplicaState.DRAINING, ReplicaState.TERMINATED)


def clamp(value, lower, upper):
    return max(lower, min(value, upper))


def warm_pool_target(max_replicas, prewarm_percent):
    """round(max x percent / 100), halves rounded up."""
    return (max_replicas * prewarm_percent + 50) // 100


def apply_behavior(current, desired, scale_up=None, scale_down=None):
    """Limit how far one tick may move the replica count."""
    if desired > current and scale_up is not None:
        if scale_up.max_change_absolute is not None:
            desired = min(desired, current + scale_up.max_change_absolute)
        if scale_up.max_change_percent is not None:
            limit = int(current * (1.0 + scale_up.max_change_percent / 100.0))
            desired = min(desired, max(limit, current + 1))

    if desired < current and scale_down is not None:
        if scale_down.max_change_absolute is not None:
            desired = max(desired, current - scale_down.max_change_absolute)
        if scale_down.max_change_percent is not None:
            limit = int(current * (1.0 - scale_down.max_change_percent / 100.0))
            desired = max(desired, limit)

    return desired


@dataclass
class ScalingDecision:
    current: int
    raw_desired: int
    desired: int
    warm_target: int
    saturated: bool
    reason: str
    metrics: dict = field(default_factory=dict)
    unavailable: list = field(default_factory=list)
    firing: list = field(default_factory=list)


@dataclass
class Intent:
    action: str
    warm: bool = False
    replica_id: str = None


@dataclass
class PoolTick:
    decision: ScalingDecision
    status: dict
    requeue_after: float
    intents: list = field(default_factory=list)
    pending: bool = False

    def count(self, action, warm=None):
        return sum(
            1 for i in self.intents
            if i.action == action and (warm is None or i.warm == warm)
        )


class PoolReconciler:
    """Computes and applies one scaling tick for an AgentPool.

    Args:
        metrics: object with ``query(pool, signal, window) -> float | None``
        provisioner: the workload provisioner
        readiness: callable taking a ModelRef, True when that Model is Ready
        config: OperatorConfig
    """

    def __init__(self, metrics, provisioner, readiness, config, backoff=None, clock=time.time):
        self.metrics = metrics
        self.provisioner = provisioner
        self.readiness = readiness
        self.config = config
        self.backoff = backoff or Backoff(
            base=config.capacity_backoff_base, maximum=config.capacity_backoff_max
        )
        self.clock = clock

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------
    def evaluate(self, pool, current):
        values = {}
        implied = []
        unavailable = []
        firing = []
        primary = None
        primary_target = -1

        for trigger in pool.triggers:
            try:
                value = self.metrics.query(pool, trigger.signal, trigger.window)
            except Exception as e:
                logger.warning(f"Metric {trigger.signal} for {pool.id} unavailable: {e}")
                value = None
            values[trigger.expression] = value

            if value is None:
                unavailable.append(trigger.signal)
                continue
            if trigger.fires(value):
                firing.append(trigger.expression)

            target = trigger.implied_replicas(value, current)
            implied.append(target)
            if target > primary_target:
                primary, primary_target = trigger.expression, target

        if implied:
            raw = max(implied)
            if raw > current and not firing:
                # Scale-up needs at least one firing trigger.
                raw = current
                reason = "no trigger firing, holding"
            else:
                reason = f"scaled based on {primary} (target {raw})"
        else:
            raw = current
            reason = "no metrics available, holding" if pool.triggers else "no triggers configured"

        desired = clamp(raw, pool.min_replicas, pool.max_replicas)
        desired = apply_behavior(current, desired, pool.scale_up, pool.scale_down)
        desired = clamp(desired, pool.min_replicas, pool.max_replicas)

        decision = ScalingDecision(
            current=current,
            raw_desired=raw,
            desired=desired,
            warm_target=warm_pool_target(pool.max_replicas, pool.prewarm_percent),
            saturated=raw > pool.max_replicas,
            reason=reason,
            metrics=values,
            unavailable=unavailable,
            firing=firing,
        )
        logger.debug(
            f"Scaling decision for {pool.id}: current={current} raw={raw} "
            f"desired={desired} warm={decision.warm_target} ({reason})"
        )
        return decision

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def reconcile(self, pool):
        now = self.clock()
        replicas = self.provisioner.list_replicas(pool)

        finished = [r for r in replicas if r.state in _LEAVING]
        warm = [r for r in replicas if r.warm and r.state not in _LEAVING]
        serving = [r for r in replicas if not r.warm and r.state not in _LEAVING]

        decision = self.evaluate(pool, current=len(serving))
        intents = []
        capacity_error = None

        # Replicas already on their way out: poll until the provisioner confirms.
        still_draining = 0
        for replica in finished:
            if self.provisioner.terminate_replica(pool, replica.id) is TerminateResult.STILL_DRAINING:
                still_draining += 1

        # Warm pool first, so warm capacity is never traded for a scale-up.
        warm_count = len(warm)
        if warm_count < decision.warm_target:
            created, capacity_error = self._create(pool, decision.warm_target - warm_count, True, intents)
            warm_count += created
        elif warm_count > decision.warm_target:
            for replica in self._select_victims(warm, warm_count - decision.warm_target):
                self._terminate(pool, replica, intents)
                warm_count -= 1

        # Serving replicas.
        remaining = list(serving)
        delta = decision.desired - len(serving)
        if delta > 0 and capacity_error is None:
            _, capacity_error = self._create(pool, delta, False, intents)
        elif delta < 0:
            for replica in self._select_victims(serving, -delta):
                self._terminate(pool, replica, intents)
                remaining.remove(replica)

        # Activation waits on model readiness; a model that leaves Ready
        # takes its serving replicas back out of routing.
        not_ready = [ref for ref in pool.model_refs if not self.readiness(ref)]
        held = 0
        for replica in remaining:
            if not_ready and replica.state is ReplicaState.SERVING:
                if self.provisioner.deactivate_replica(pool, replica.id):
                    replica.state = ReplicaState.WARM
                    intents.append(Intent(action="deactivate", replica_id=replica.id))
            if replica.state is not ReplicaState.WARM:
                continue
            if not_ready:
                held += 1
                continue
            if self.provisioner.activate_replica(pool, replica.id):
                replica.state = ReplicaState.SERVING
                intents.append(Intent(action="activate", replica_id=replica.id))

        ready = sum(1 for r in remaining if r.state is ReplicaState.SERVING)
        provisioning = any(r.state is ReplicaState.PROVISIONING for r in warm + remaining)
        unschedulable = any(r.unschedulable for r in warm + remaining)

        backoff_delay = None
        if capacity_error is not None or unschedulable:
            backoff_delay = self.backoff.next_delay(pool.id)
        else:
            self.backoff.reset(pool.id)

        pending = bool(not_ready or provisioning or still_draining or intents)
        status = self._status(
            pool, decision, now,
            ready=ready,
            prewarmed=warm_count,
            not_ready=not_ready,
            held=held,
            capacity_error=capacity_error,
            unschedulable=unschedulable,
        )

        if intents:
            logger.info(
                f"Pool {pool.id}: desired={decision.desired} serving={len(serving)} "
                f"warm={len(warm)}->{warm_count} intents="
                f"{[(i.action, i.replica_id or ('warm' if i.warm else 'serving')) for i in intents]}"
            )

        return PoolTick(
            decision=decision,
            status=status,
            requeue_after=requeue_after(self.config, pending=pending, backoff_delay=backoff_delay),
            intents=intents,
            pending=pending,
        )

    def teardown(self, pool):
        """Remove every replica of a deleted pool."""
        logger.info(f"Tearing down replicas of {pool.id}")
        self.provisioner.delete_all(pool)
        self.backoff.reset(pool.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _create(self, pool, count, warm, intents):
        created = 0
        for _ in range(count):
            try:
                replica_id = self.provisioner.create_replica(pool, pool.model_refs, warm)
            except CapacityError as e:
                logger.warning(f"Capacity exhausted creating replicas for {pool.id}: {e}")
                return created, e
            intents.append(Intent(action="create", warm=warm, replica_id=replica_id))
            created += 1
        return created, None

    def _terminate(self, pool, replica, intents):
        self.provisioner.terminate_replica(pool, replica.id)
        intents.append(Intent(action="terminate", warm=replica.warm, replica_id=replica.id))

    @staticmethod
    def _select_victims(replicas, count):
        # Newest first within each state; ids break ties, highest first.
        ordered = sorted(replicas, key=lambda r: r.id, reverse=True)
        ordered.sort(key=lambda r: (_VICTIM_ORDER.get(r.state, 0), -r.created_at))
        return ordered[:count]

    def _status(self, pool, decision, now, *, ready, prewarmed, not_ready, held,
                capacity_error, unschedulable):
        previous = pool.status
        conditions = previous.get("conditions") or []

        conditions = set_condition(conditions, crd.COND_SPEC_VALID, True, "Valid", "", now=now)

        if not_ready:
            message = f"waiting on models: {', '.join(str(r) for r in not_ready)}"
            if held:
                message += f"; {held} replica(s) held warm"
            conditions = set_condition(conditions, crd.COND_MODELS_READY, False, "ModelsNotReady", message, now=now)
        else:
            conditions = set_condition(conditions, crd.COND_MODELS_READY, True, "ModelsReady", "", now=now)

        if decision.unavailable:
            conditions = set_condition(
                conditions, crd.COND_METRICS_AVAILABLE, False, "MetricsUnavailable",
                f"unavailable: {', '.join(sorted(set(decision.unavailable)))}", now=now,
            )
        else:
            conditions = set_condition(conditions, crd.COND_METRICS_AVAILABLE, True, "MetricsAvailable", "", now=now)

        if decision.saturated:
            conditions = set_condition(
                conditions, crd.COND_SATURATED, True, "MaxReplicasReached",
                f"triggers ask for {decision.raw_desired} replicas, capped at {pool.max_replicas}", now=now,
            )
        else:
            conditions = set_condition(conditions, crd.COND_SATURATED, False, "WithinBounds", "", now=now)

        if capacity_error is not None:
            conditions = set_condition(
                conditions, crd.COND_CAPACITY, False, "CreateRejected", str(capacity_error), now=now
            )
        elif unschedulable:
            conditions = set_condition(
                conditions, crd.COND_CAPACITY, False, "Unschedulable",
                "replicas are waiting for GPU capacity", now=now,
            )
        else:
            conditions = set_condition(conditions, crd.COND_CAPACITY, True, "CapacityAvailable", "", now=now)

        is_ready = not not_ready and ready >= decision.desired
        conditions = set_condition(
            conditions, crd.COND_READY, is_ready,
            "AllReplicasServing" if is_ready else "ScalingInProgress",
            f"{ready}/{decision.desired} replicas serving", now=now,
        )

        last_scale = previous.get("lastScaleTime")
        if previous.get("replicas") != decision.desired:
            last_scale = to_timestamp(now)

        return {
            "replicas": decision.desired,
            "desiredReplicas": decision.raw_desired,
            "readyReplicas": ready,
            "prewarmedReplicas": prewarmed,
            "currentMetrics": [
                {
                    "type": expression.split(" ", 1)[0],
                    "current": "unavailable" if value is None else f"{value:g}",
                    "target": expression,
                }
                for expression, value in decision.metrics.items()
            ],
            "lastScaleTime": last_scale,
            "observedGeneration": pool.generation,
            "conditions": conditions,
        }
