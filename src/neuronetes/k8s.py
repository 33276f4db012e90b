"""Kubernetes client helpers."""

import logging

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from . import crd
from .errors import ResourceGone, from_api_exception

logger = logging.getLogger(__name__)

# Initialize clients
_v1 = None
_custom_api = None


def load_config():
    """Load in-cluster config, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")


def init_clients():
    """Initialize Kubernetes clients."""
    global _v1, _custom_api

    load_config()
    _v1 = client.CoreV1Api()
    _custom_api = client.CustomObjectsApi()

    return _v1, _custom_api


def get_clients():
    """Get initialized Kubernetes clients."""
    global _v1, _custom_api
    if _v1 is None or _custom_api is None:
        init_clients()
    return _v1, _custom_api


def get_custom_object(custom_api, plural, namespace, name):
    """Read an AgentPool or Model body, raising ResourceGone on 404."""
    try:
        return custom_api.get_namespaced_custom_object(
            group=crd.GROUP,
            version=crd.VERSION,
            namespace=namespace,
            plural=plural,
            name=name,
        )
    except ApiException as e:
        if e.status == 404:
            raise ResourceGone(f"{plural}/{namespace}/{name} not found") from e
        logger.error(f"Error reading {plural}/{namespace}/{name}: {e}")
        raise from_api_exception(e, f"reading {plural}/{namespace}/{name}") from e


def owner_reference(pool):
    """Owner reference tying replica objects to their AgentPool."""
    return {
        "apiVersion": crd.API_VERSION,
        "kind": crd.AGENTPOOL_KIND,
        "name": pool.name,
        "uid": pool.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def is_pod_ready(pod):
    return any(
        c.type == "Ready" and c.status == "True"
        for c in (pod.status.conditions or [])
    )


def is_pod_unschedulable(pod):
    return any(
        c.type == "PodScheduled" and c.status == "False" and c.reason == "Unschedulable"
        for c in (pod.status.conditions or [])
    )
