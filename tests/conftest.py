"""pytest configuration and in-memory collaborators for operator tests."""

import logging

import pytest

from neuronetes.config import OperatorConfig
from neuronetes.errors import CapacityError, TransientError
from neuronetes.provisioner import TerminateResult
from neuronetes.resources import AgentPool, Replica, ReplicaState
from neuronetes.weights import Placement, PlacementState, Residency, Validation

# Configure logging
logging.basicConfig(level=logging.INFO)


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeMetrics:
    """Metrics provider answering from a dict of signal values."""

    def __init__(self, values=None):
        self.values = dict(values or {})
        self.queries = []
        self.closed = False

    def query(self, pool, signal, window):
        self.queries.append((pool.name, signal, window))
        value = self.values.get(signal)
        if isinstance(value, Exception):
            raise value
        return value

    def close(self):
        self.closed = True


class FakeProvisioner:
    """Replica bookkeeping without a cluster.

    ``capacity`` caps the number of live replicas; creates beyond it raise
    CapacityError the way a GPU quota rejection would.
    """

    def __init__(self, replicas=None, capacity=None):
        self.replicas = list(replicas or [])
        self.capacity = capacity
        self.created = []
        self.activated = []
        self.deactivated = []
        self.terminated = []
        self.deleted_all = []
        self.services = []
        self._counter = 0

    def add(self, state, warm=False, count=1, created_at=0.0):
        for _ in range(count):
            self._counter += 1
            role = "w" if warm else "s"
            self.replicas.append(
                Replica(id=f"r-{role}-{self._counter}", state=state, warm=warm, created_at=created_at)
            )
        return self

    def list_replicas(self, pool):
        return list(self.replicas)

    def create_replica(self, pool, model_refs, warm):
        if self.capacity is not None and len(self.replicas) >= self.capacity:
            raise CapacityError("no GPU available")
        self._counter += 1
        replica = Replica(
            id=f"new-{self._counter}",
            state=ReplicaState.PROVISIONING,
            warm=warm,
            created_at=float(self._counter),
        )
        self.replicas.append(replica)
        self.created.append((replica.id, warm))
        return replica.id

    def activate_replica(self, pool, replica_id):
        for replica in self.replicas:
            if replica.id == replica_id:
                replica.state = ReplicaState.SERVING
                self.activated.append(replica_id)
                return True
        return False

    def deactivate_replica(self, pool, replica_id):
        for replica in self.replicas:
            if replica.id == replica_id:
                replica.state = ReplicaState.WARM
                self.deactivated.append(replica_id)
                return True
        return False

    def terminate_replica(self, pool, replica_id):
        self.terminated.append(replica_id)
        for replica in list(self.replicas):
            if replica.id != replica_id:
                continue
            if replica.state in (ReplicaState.SERVING, ReplicaState.WARM):
                replica.state = ReplicaState.DRAINING
                return TerminateResult.STILL_DRAINING
            self.replicas.remove(replica)
        return TerminateResult.ACK

    def delete_all(self, pool):
        self.deleted_all.append(pool.id)
        self.replicas = []

    def ensure_service(self, pool):
        self.services.append(pool.id)
        return True

    def by_state(self, state, warm=None):
        return [
            r for r in self.replicas
            if r.state is state and (warm is None or r.warm == warm)
        ]


class FakeWeightStore:
    """Weight store that places, evicts and validates on command."""

    def __init__(self, place_immediately=True, nodes=("node-a",)):
        self.place_immediately = place_immediately
        self.nodes = list(nodes)
        self.fetch_errors = []
        self.valid = True
        self.invalid_reason = "checksum mismatch"
        self.resident = {}
        self.evicted = set()
        self.released = []
        self.fetches = []
        self.closed = False

    def fetch(self, weights_uri):
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        self.fetches.append(weights_uri)
        handle = f"h-{len(self.fetches)}"
        if self.place_immediately:
            self.resident[handle] = list(self.nodes)
            return Placement(handle=handle, state=PlacementState.PLACED)
        return Placement(handle=handle, state=PlacementState.IN_PROGRESS)

    def place(self, handle):
        self.resident[handle] = list(self.nodes)

    def evict(self, handle):
        self.resident.pop(handle, None)
        self.evicted.add(handle)

    def residency(self, handle):
        if handle in self.evicted:
            return Residency(nodes=[], evicted=True)
        return Residency(nodes=list(self.resident.get(handle, [])))

    def validate(self, handle):
        if self.valid:
            return Validation(ok=True)
        return Validation(ok=False, reason=self.invalid_reason)

    def release(self, handle):
        self.released.append(handle)

    def close(self):
        self.closed = True


class Readiness:
    """Readiness callable for the pool reconciler."""

    def __init__(self, ready=True):
        self.ready = ready

    def __call__(self, ref):
        return self.ready


def pool_body(name="agents", namespace="default", **spec):
    body_spec = {
        "minReplicas": 3,
        "maxReplicas": 30,
        "prewarmPercent": 30,
        "modelRefs": [{"name": "llama"}],
        "triggers": [{"expression": "concurrent-sessions > 100", "targetPerReplica": 10}],
    }
    body_spec.update(spec)
    return {
        "apiVersion": "neuronetes.io/v1alpha1",
        "kind": "AgentPool",
        "metadata": {"name": name, "namespace": namespace, "uid": "pool-uid", "generation": 1},
        "spec": body_spec,
    }


def model_body(name="llama", namespace="default", weights_uri="s3://weights/llama", status=None,
               annotations=None):
    return {
        "apiVersion": "neuronetes.io/v1alpha1",
        "kind": "Model",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "model-uid",
            "annotations": annotations or {},
        },
        "spec": {"weightsURI": weights_uri, "resources": {"gpu": 1}},
        "status": status or {},
    }


def make_pool(**spec):
    return AgentPool.from_body(pool_body(**spec))


@pytest.fixture
def config():
    """Default operator configuration."""
    return OperatorConfig()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def weight_store():
    return FakeWeightStore()


@pytest.fixture
def transient():
    """Factory for transient fetch failures."""
    return lambda msg="connection reset": TransientError(msg)
