"""Tests for the Controller that ties ticks to the cluster."""

from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException
from prometheus_client import CollectorRegistry

from conftest import FakeMetrics, FakeProvisioner, FakeWeightStore, model_body, pool_body
from neuronetes import crd
from neuronetes.autoscaler import PoolReconciler
from neuronetes.errors import TransientError
from neuronetes.lifecycle import ModelLifecycle, Phase
from neuronetes.reconcile import Controller, ReconcileBusy
from neuronetes.resources import ModelRef, ReplicaState
from neuronetes.status import StatusReporter, get_condition
from neuronetes.telemetry import OperatorMetrics


class Objects:
    """Stand-in for the API server's custom object storage."""

    def __init__(self):
        self.bodies = {}

    def put(self, plural, body):
        meta = body["metadata"]
        self.bodies[(plural, meta["namespace"], meta["name"])] = body

    def get(self, group, version, namespace, plural, name):
        try:
            return self.bodies[(plural, namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def patch_status(self, group, version, namespace, plural, name, body):
        stored = self.get(group, version, namespace, plural, name)
        stored.setdefault("status", {}).update(body["status"])
        return stored


@pytest.fixture
def objects():
    return Objects()


@pytest.fixture
def custom_api(objects):
    api = MagicMock()
    api.get_namespaced_custom_object.side_effect = objects.get
    api.patch_namespaced_custom_object_status.side_effect = objects.patch_status
    return api


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def provisioner():
    return FakeProvisioner().add(ReplicaState.WARM, count=3)


@pytest.fixture
def controller(custom_api, config, clock, registry, provisioner):
    lifecycle = ModelLifecycle(FakeWeightStore(), config, clock=clock)
    controller = Controller(
        custom_api=custom_api,
        lifecycle=lifecycle,
        autoscaler=None,
        reporter=StatusReporter(custom_api),
        config=config,
        telemetry=OperatorMetrics(registry=registry),
        clock=clock,
    )
    controller.autoscaler = PoolReconciler(
        FakeMetrics({"concurrent-sessions": 0}), provisioner, controller.model_ready, config, clock=clock
    )
    return controller


def test_missing_model_stops_loop(controller):
    assert controller.reconcile_model("default", "ghost") is None


def test_missing_pool_stops_loop(controller):
    assert controller.reconcile_pool("default", "ghost") is None


def test_model_tick_persists_status(controller, objects, config, registry):
    objects.put(crd.MODEL_PLURAL, model_body())

    delay = controller.reconcile_model("default", "llama")

    assert delay == config.pending_interval
    status = objects.bodies[(crd.MODEL_PLURAL, "default", "llama")]["status"]
    assert status["phase"] == "Loading"
    assert registry.get_sample_value(
        "neuronetes_model_phase", {"namespace": "default", "model": "llama", "phase": "Loading"}
    ) == 1.0

    controller.reconcile_model("default", "llama")
    assert status["phase"] == "Ready"
    assert registry.get_sample_value("neuronetes_model_load_seconds_count") == 1.0


def test_unchanged_model_is_not_repersisted(controller, objects, custom_api):
    objects.put(crd.MODEL_PLURAL, model_body())
    controller.reconcile_model("default", "llama")
    controller.reconcile_model("default", "llama")
    calls = custom_api.patch_namespaced_custom_object_status.call_count

    controller.reconcile_model("default", "llama")

    assert custom_api.patch_namespaced_custom_object_status.call_count == calls


def test_busy_identity_is_rejected(controller, objects):
    objects.put(crd.MODEL_PLURAL, model_body())

    with controller.locks.hold(crd.model_id("default", "llama")):
        with pytest.raises(ReconcileBusy):
            controller.reconcile_model("default", "llama")


def test_pool_activation_follows_model_readiness(controller, objects, provisioner):
    objects.put(crd.MODEL_PLURAL, model_body())
    objects.put(crd.AGENTPOOL_PLURAL, pool_body(prewarmPercent=0))

    controller.reconcile_pool("default", "agents")
    pool_status = objects.bodies[(crd.AGENTPOOL_PLURAL, "default", "agents")]["status"]
    assert get_condition(pool_status["conditions"], crd.COND_MODELS_READY)["status"] == "False"
    assert provisioner.activated == []

    controller.reconcile_model("default", "llama")
    controller.reconcile_model("default", "llama")
    assert controller.readiness.phase(crd.model_id("default", "llama")) is Phase.READY

    controller.reconcile_pool("default", "agents")
    assert len(provisioner.activated) == 3
    assert pool_status["readyReplicas"] == 3
    assert provisioner.services == ["agentpools/default/agents", "agentpools/default/agents"]


def test_model_ready_falls_back_to_persisted_phase(controller, objects):
    objects.put(crd.MODEL_PLURAL, model_body(status={"phase": "Ready"}))

    assert controller.model_ready(ModelRef(name="llama", namespace="default"))
    assert not controller.model_ready(ModelRef(name="missing", namespace="default"))


def test_invalid_pool_spec_is_reported(controller, objects, config, provisioner):
    objects.put(crd.AGENTPOOL_PLURAL, pool_body(minReplicas=5, maxReplicas=2))

    delay = controller.reconcile_pool("default", "agents")

    assert delay == config.terminal_failure_interval
    status = objects.bodies[(crd.AGENTPOOL_PLURAL, "default", "agents")]["status"]
    spec_valid = get_condition(status["conditions"], crd.COND_SPEC_VALID)
    assert spec_valid["status"] == "False"
    assert "exceeds maxReplicas" in spec_valid["message"]
    assert provisioner.created == []


def test_pool_error_is_surfaced_and_retried(controller, objects, config, provisioner, registry):
    objects.put(crd.AGENTPOOL_PLURAL, pool_body())
    provisioner.list_replicas = MagicMock(side_effect=TransientError("apiserver timeout"))

    delay = controller.reconcile_pool("default", "agents")

    assert delay == config.pending_interval
    status = objects.bodies[(crd.AGENTPOOL_PLURAL, "default", "agents")]["status"]
    ready = get_condition(status["conditions"], crd.COND_READY)
    assert ready["status"] == "False"
    assert ready["reason"] == "Transient"
    assert registry.get_sample_value(
        "neuronetes_reconcile_errors_total", {"resource": "agentpools", "kind": "Transient"}
    ) == 1.0


def test_unexpected_error_uses_error_interval(controller, objects, config, provisioner):
    objects.put(crd.AGENTPOOL_PLURAL, pool_body())
    provisioner.list_replicas = MagicMock(side_effect=RuntimeError("bug"))

    assert controller.reconcile_pool("default", "agents") == config.error_interval


def test_pool_metrics_exported(controller, objects, registry):
    objects.put(crd.MODEL_PLURAL, model_body(status={"phase": "Ready"}))
    objects.put(crd.AGENTPOOL_PLURAL, pool_body(prewarmPercent=0))

    controller.reconcile_pool("default", "agents")

    labels = {"namespace": "default", "agentpool": "agents"}
    assert registry.get_sample_value("neuronetes_pool_desired_replicas", labels) == 3.0
    assert registry.get_sample_value("neuronetes_pool_ready_replicas", labels) == 3.0


def test_delete_pool_tears_down(controller, provisioner):
    controller.delete_pool(pool_body())

    assert provisioner.replicas == []


def test_delete_model_releases_weights(controller, objects):
    objects.put(crd.MODEL_PLURAL, model_body())
    controller.reconcile_model("default", "llama")
    controller.reconcile_model("default", "llama")
    body = objects.bodies[(crd.MODEL_PLURAL, "default", "llama")]

    controller.delete_model(body)

    assert controller.lifecycle.weight_store.released == ["h-1"]
    assert controller.readiness.phase(crd.model_id("default", "llama")) is None


def persisted_phases(custom_api, plural=crd.MODEL_PLURAL):
    return [
        c.kwargs["body"]["status"]["phase"]
        for c in custom_api.patch_namespaced_custom_object_status.call_args_list
        if c.kwargs["plural"] == plural and "phase" in c.kwargs["body"]["status"]
    ]


def test_loading_is_persisted_before_fetch(controller, objects, custom_api):
    weight_store = controller.lifecycle.weight_store
    weight_store.fetch_errors.append(TransientError("connection reset"))
    objects.put(crd.MODEL_PLURAL, model_body())

    controller.reconcile_model("default", "llama")
    assert persisted_phases(custom_api) == ["Loading"]
    assert len(weight_store.fetch_errors) == 1

    for _ in range(3):
        controller.reconcile_model("default", "llama")

    assert persisted_phases(custom_api) == ["Loading", "Failed", "Loading", "Ready"]
    assert weight_store.fetches == ["s3://weights/llama"]


def test_eviction_takes_replicas_out_of_routing(controller, objects, provisioner):
    objects.put(crd.MODEL_PLURAL, model_body())
    objects.put(crd.AGENTPOOL_PLURAL, pool_body(prewarmPercent=0))

    def pool_status():
        return objects.bodies[(crd.AGENTPOOL_PLURAL, "default", "agents")]["status"]

    controller.reconcile_model("default", "llama")
    controller.reconcile_model("default", "llama")
    controller.reconcile_pool("default", "agents")
    assert pool_status()["readyReplicas"] == 3

    controller.lifecycle.weight_store.evict("h-1")
    controller.reconcile_model("default", "llama")
    assert controller.readiness.phase(crd.model_id("default", "llama")) is Phase.LOADING

    controller.reconcile_pool("default", "agents")
    assert len(provisioner.deactivated) == 3
    assert pool_status()["readyReplicas"] == 0
    assert get_condition(pool_status()["conditions"], crd.COND_READY)["status"] == "False"

    controller.reconcile_model("default", "llama")
    controller.reconcile_pool("default", "agents")
    assert len(provisioner.activated) == 6
    assert pool_status()["readyReplicas"] == 3


def test_non_integer_replica_bound_is_reported(controller, objects, config, provisioner):
    objects.put(crd.AGENTPOOL_PLURAL, pool_body(maxReplicas=None))

    assert controller.reconcile_pool("default", "agents") == config.terminal_failure_interval

    status = objects.bodies[(crd.AGENTPOOL_PLURAL, "default", "agents")]["status"]
    spec_valid = get_condition(status["conditions"], crd.COND_SPEC_VALID)
    assert spec_valid["status"] == "False"
    assert "maxReplicas must be an integer" in spec_valid["message"]
    assert provisioner.created == []


def test_close_releases_clients(controller):
    controller.close()

    assert controller.lifecycle.weight_store.closed
    assert controller.autoscaler.metrics.closed
