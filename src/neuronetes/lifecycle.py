"""Model lifecycle state machine.

Each Model moves through Pending, Loading, Ready and Failed. Every legal
move is listed in TRANSITIONS; the reconciler only ever changes phase by
firing an event through that table. Ready and Failed are not absorbing:
cache eviction sends a Ready model back to Loading, and transient failures
are retried.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from . import crd
from .errors import TransientError, WeightValidationError
from .status import from_timestamp, set_condition, to_timestamp
from .triggers import format_duration, parse_duration

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    PENDING = "Pending"
    LOADING = "Loading"
    READY = "Ready"
    FAILED = "Failed"


class Event(str, Enum):
    START = "Start"
    LOADED = "Loaded"
    FETCH_FAILED = "FetchFailed"
    VALIDATION_FAILED = "ValidationFailed"
    PLACEMENT_TIMEOUT = "PlacementTimeout"
    RETRY = "Retry"
    EVICTED = "Evicted"
    REVALIDATE = "Revalidate"
    SPEC_CHANGED = "SpecChanged"


class FailureKind(str, Enum):
    TRANSIENT = "Transient"
    VALIDATION = "Validation"


TRANSITIONS = {
    (Phase.PENDING, Event.START): Phase.LOADING,
    (Phase.LOADING, Event.LOADED): Phase.READY,
    (Phase.LOADING, Event.FETCH_FAILED): Phase.FAILED,
    (Phase.LOADING, Event.VALIDATION_FAILED): Phase.FAILED,
    (Phase.LOADING, Event.PLACEMENT_TIMEOUT): Phase.FAILED,
    (Phase.FAILED, Event.RETRY): Phase.LOADING,
    (Phase.READY, Event.EVICTED): Phase.LOADING,
    (Phase.READY, Event.REVALIDATE): Phase.LOADING,
    (Phase.LOADING, Event.SPEC_CHANGED): Phase.LOADING,
    (Phase.READY, Event.SPEC_CHANGED): Phase.LOADING,
    (Phase.FAILED, Event.SPEC_CHANGED): Phase.LOADING,
}

FAILURE_KINDS = {
    Event.FETCH_FAILED: FailureKind.TRANSIENT,
    Event.PLACEMENT_TIMEOUT: FailureKind.TRANSIENT,
    Event.VALIDATION_FAILED: FailureKind.VALIDATION,
}


class InvalidTransition(Exception):
    def __init__(self, phase, event):
        super().__init__(f"no transition from {phase.value} on {event.value}")
        self.phase = phase
        self.event = event


def next_phase(phase, event):
    try:
        return TRANSITIONS[(phase, event)]
    except KeyError:
        raise InvalidTransition(phase, event) from None


@dataclass
class ModelState:
    """The Model status sub-object, as the state machine sees it."""

    phase: Phase = Phase.PENDING
    handle: str = None
    loading_started_at: float = None
    load_time: float = None
    error: str = None
    failure_kind: FailureKind = None
    cached_nodes: list = field(default_factory=list)
    observed_uri: str = None
    revalidate_token: str = None
    conditions: list = field(default_factory=list)

    @classmethod
    def from_status(cls, status):
        status = status or {}
        try:
            phase = Phase(status.get("phase") or Phase.PENDING.value)
        except ValueError:
            logger.warning(f"Unknown model phase {status.get('phase')!r}, treating as Pending")
            phase = Phase.PENDING

        load_time = status.get("loadTime")
        failure_kind = status.get("failureKind")
        return cls(
            phase=phase,
            handle=status.get("weightHandle"),
            loading_started_at=from_timestamp(status.get("loadingStartedAt")),
            load_time=parse_duration(load_time) if load_time else None,
            error=status.get("error"),
            failure_kind=FailureKind(failure_kind) if failure_kind else None,
            cached_nodes=list(status.get("cachedNodes") or []),
            observed_uri=status.get("observedWeightsURI"),
            revalidate_token=status.get("revalidateToken"),
            conditions=[dict(c) for c in status.get("conditions") or []],
        )

    def to_status(self):
        return {
            "phase": self.phase.value,
            "weightHandle": self.handle,
            "loadingStartedAt": to_timestamp(self.loading_started_at),
            "loadTime": format_duration(self.load_time) if self.load_time is not None else None,
            "error": self.error,
            "failureKind": self.failure_kind.value if self.failure_kind else None,
            "cachedNodes": list(self.cached_nodes),
            "observedWeightsURI": self.observed_uri,
            "revalidateToken": self.revalidate_token,
            "conditions": [dict(c) for c in self.conditions],
        }


@dataclass
class ModelTick:
    state: ModelState
    requeue_after: float
    transitions: list = field(default_factory=list)
    changed: bool = False

    @property
    def phases(self):
        """Phases visited during the tick, starting with the initial one."""
        if not self.transitions:
            return [self.state.phase]
        return [self.transitions[0][0]] + [to for _, _, to in self.transitions]


class ReadinessIndex:
    """Latest known phase per Model identity, shared with the pool reconciler."""

    def __init__(self):
        self._lock = threading.Lock()
        self._phases = {}

    def publish(self, model_id, phase):
        with self._lock:
            self._phases[model_id] = phase

    def phase(self, model_id):
        with self._lock:
            return self._phases.get(model_id)

    def forget(self, model_id):
        with self._lock:
            self._phases.pop(model_id, None)


class ModelLifecycle:
    """Drives one Model one tick at a time against the weight store."""

    def __init__(self, weight_store, config, readiness=None, clock=time.time):
        self.weight_store = weight_store
        self.config = config
        self.readiness = readiness or ReadinessIndex()
        self.clock = clock

    def reconcile(self, model):
        state = ModelState.from_status(model.status)
        before = state.to_status()
        transitions = []

        uri_changed = (
            state.phase is not Phase.PENDING
            and state.observed_uri
            and state.observed_uri != model.weights_uri
        )
        state.observed_uri = model.weights_uri

        if uri_changed:
            logger.info(f"Model {model.id} weightsURI changed to {model.weights_uri}, reloading")
            self._release_handle(state)
            self._fire(state, Event.SPEC_CHANGED, transitions, model)
            requeue = self._begin_loading(state)
        else:
            handler = {
                Phase.PENDING: self._on_pending,
                Phase.LOADING: self._on_loading,
                Phase.READY: self._on_ready,
                Phase.FAILED: self._on_failed,
            }[state.phase]
            requeue = handler(model, state, transitions)

        self.readiness.publish(model.id, state.phase)
        changed = state.to_status() != before
        return ModelTick(state=state, requeue_after=requeue, transitions=transitions, changed=changed)

    def release(self, model):
        """Release cached weights for a deleted Model."""
        state = ModelState.from_status(model.status)
        self._release_handle(state)
        self.readiness.forget(model.id)

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------
    def _on_pending(self, model, state, transitions):
        self._fire(state, Event.START, transitions, model)
        return self._begin_loading(state)

    def _on_loading(self, model, state, transitions):
        now = self.clock()
        if state.loading_started_at is None:
            state.loading_started_at = now

        try:
            if state.handle is None:
                self._request_placement(model, state)

            residency = self.weight_store.residency(state.handle)
            if residency.evicted:
                logger.info(f"Placement for {model.id} was evicted while loading, re-requesting")
                state.handle = None
                self._request_placement(model, state)
                residency = self.weight_store.residency(state.handle)

            if residency.resident:
                validation = self.weight_store.validate(state.handle)
                if not validation.ok:
                    return self._fail(
                        model, state, transitions, Event.VALIDATION_FAILED,
                        f"weights failed validation: {validation.reason or 'invalid'}",
                    )
                return self._become_ready(model, state, transitions, residency.nodes, now)
        except WeightValidationError as e:
            return self._fail(model, state, transitions, Event.VALIDATION_FAILED, str(e))
        except TransientError as e:
            return self._fail(model, state, transitions, Event.FETCH_FAILED, str(e))

        if now - state.loading_started_at > self.config.placement_timeout:
            return self._fail(
                model, state, transitions, Event.PLACEMENT_TIMEOUT,
                f"weights not resident after {self.config.placement_timeout:.0f}s",
            )

        logger.debug(f"Model {model.id} still loading (handle={state.handle})")
        self._mark_healthy(state, "Loading", "waiting for cache placement")
        return self.config.pending_interval

    def _on_ready(self, model, state, transitions):
        token = model.annotations.get(crd.ANNOTATION_REVALIDATE)
        if token and token != state.revalidate_token:
            logger.info(f"Re-validation requested for {model.id}")
            state.revalidate_token = token
            self._release_handle(state)
            self._fire(state, Event.REVALIDATE, transitions, model)
            return self._begin_loading(state)

        residency = self.weight_store.residency(state.handle) if state.handle else None
        if residency is None or not residency.resident:
            logger.warning(f"Weights for {model.id} are no longer resident, reloading")
            state.handle = None
            self._fire(state, Event.EVICTED, transitions, model)
            return self._begin_loading(state)

        if sorted(residency.nodes) != sorted(state.cached_nodes):
            state.cached_nodes = list(residency.nodes)
        return self.config.model_ready_interval

    def _on_failed(self, model, state, transitions):
        if state.failure_kind is FailureKind.VALIDATION:
            state.conditions = set_condition(
                state.conditions, crd.COND_DEGRADED, True, "TerminalFailure",
                state.error or "validation failed", now=self.clock(),
            )
            return self.config.terminal_failure_interval

        logger.info(f"Retrying model {model.id} after transient failure: {state.error}")
        self._fire(state, Event.RETRY, transitions, model)
        return self._begin_loading(state)

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------
    def _fire(self, state, event, transitions, model):
        target = next_phase(state.phase, event)
        transitions.append((state.phase, event, target))
        logger.info(f"Model {model.id}: {state.phase.value} -> {target.value} ({event.value})")
        if state.phase is Phase.FAILED:
            state.error = None
            state.failure_kind = None
        state.phase = target
        state.conditions = set_condition(
            state.conditions, crd.COND_READY, target is Phase.READY, event.value,
            f"phase {target.value}", now=self.clock(),
        )

    def _begin_loading(self, state):
        """Entry into Loading: reset the load clock.

        Placement is requested on the next tick, once Loading is persisted.
        """
        state.loading_started_at = self.clock()
        state.handle = None
        self._mark_healthy(state, "Loading", "placement pending")
        return self.config.pending_interval

    def _request_placement(self, model, state):
        placement = self.weight_store.fetch(model.weights_uri)
        state.handle = placement.handle
        logger.debug(
            f"Placement requested for {model.id}: handle={placement.handle} "
            f"state={placement.state.value}"
        )

    def _become_ready(self, model, state, transitions, nodes, now):
        self._fire(state, Event.LOADED, transitions, model)
        state.load_time = max(0.0, now - state.loading_started_at)
        state.cached_nodes = list(nodes)
        self._mark_healthy(state, "AsExpected", "")
        logger.info(f"Model {model.id} ready in {state.load_time:.1f}s on {len(nodes)} node(s)")
        return self.config.model_ready_interval

    def _fail(self, model, state, transitions, event, message):
        self._fire(state, event, transitions, model)
        state.failure_kind = FAILURE_KINDS[event]
        state.error = message
        terminal = state.failure_kind is FailureKind.VALIDATION
        state.conditions = set_condition(
            state.conditions, crd.COND_DEGRADED, True,
            "TerminalFailure" if terminal else event.value, message, now=self.clock(),
        )
        if terminal:
            logger.error(f"Model {model.id} failed permanently: {message}")
            return self.config.terminal_failure_interval
        logger.warning(f"Model {model.id} failed transiently: {message}")
        return self.config.pending_interval

    def _mark_healthy(self, state, reason, message):
        state.conditions = set_condition(
            state.conditions, crd.COND_DEGRADED, False, reason, message, now=self.clock()
        )

    def _release_handle(self, state):
        if not state.handle:
            return
        try:
            self.weight_store.release(state.handle)
        except TransientError as e:
            logger.warning(f"Could not release placement {state.handle}: {e}")
        state.handle = None
