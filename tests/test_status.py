"""Tests for status conditions and the status reporter."""

from unittest.mock import MagicMock

from kubernetes.client.rest import ApiException

from neuronetes import crd
from neuronetes.status import (
    StatusReporter,
    from_timestamp,
    get_condition,
    set_condition,
    to_timestamp,
)


def test_timestamps():
    assert to_timestamp(0) == "1970-01-01T00:00:00Z"
    assert to_timestamp(None) is None
    assert from_timestamp("1970-01-01T00:16:40Z") == 1000.0
    assert from_timestamp("") is None
    assert from_timestamp("yesterday") is None


def test_set_condition_adds_new():
    conditions = set_condition([], crd.COND_READY, True, "AllReplicasServing", now=0)

    assert conditions == [
        {
            "type": "Ready",
            "status": "True",
            "reason": "AllReplicasServing",
            "message": "",
            "lastTransitionTime": "1970-01-01T00:00:00Z",
        }
    ]


def test_set_condition_keeps_transition_time_without_flip():
    conditions = set_condition([], crd.COND_READY, False, "ScalingInProgress", "1/3", now=0)
    conditions = set_condition(conditions, crd.COND_READY, False, "ScalingInProgress", "2/3", now=60)

    ready = get_condition(conditions, crd.COND_READY)
    assert ready["lastTransitionTime"] == "1970-01-01T00:00:00Z"
    assert ready["message"] == "2/3"


def test_set_condition_flip_moves_transition_time():
    conditions = set_condition([], crd.COND_READY, False, "ScalingInProgress", now=0)
    updated = set_condition(conditions, crd.COND_READY, True, "AllReplicasServing", now=60)

    assert get_condition(updated, crd.COND_READY)["lastTransitionTime"] == "1970-01-01T00:01:00Z"
    assert get_condition(updated, crd.COND_READY)["status"] == "True"
    # The input list is left untouched.
    assert conditions[0]["status"] == "False"


def test_set_condition_preserves_other_types():
    conditions = set_condition([], crd.COND_SATURATED, True, "MaxReplicasReached", now=0)
    conditions = set_condition(conditions, crd.COND_READY, True, "AllReplicasServing", now=0)

    assert [c["type"] for c in conditions] == ["Saturated", "Ready"]
    assert get_condition(conditions, crd.COND_CAPACITY) is None


def test_reporter_patches_status_subresource():
    custom_api = MagicMock()
    reporter = StatusReporter(custom_api)

    assert reporter.persist(crd.AGENTPOOL_PLURAL, "default", "agents", {"replicas": 3})

    custom_api.patch_namespaced_custom_object_status.assert_called_once_with(
        group="neuronetes.io",
        version="v1alpha1",
        namespace="default",
        plural="agentpools",
        name="agents",
        body={"status": {"replicas": 3}},
    )


def test_reporter_never_raises():
    custom_api = MagicMock()
    custom_api.patch_namespaced_custom_object_status.side_effect = ApiException(status=500, reason="boom")
    reporter = StatusReporter(custom_api)

    assert not reporter.persist(crd.MODEL_PLURAL, "default", "llama", {"phase": "Ready"})

    custom_api.patch_namespaced_custom_object_status.side_effect = ApiException(status=404, reason="Not Found")
    assert not reporter.persist(crd.MODEL_PLURAL, "default", "llama", {"phase": "Ready"})
