"""Workload provisioner backed by Kubernetes pods."""

import logging
import re
from enum import Enum

from kubernetes.client.rest import ApiException

from . import crd
from .errors import from_api_exception
from .k8s import is_pod_ready, is_pod_unschedulable
from .resources import Replica, ReplicaState
from .templates import create_replica_pod_manifest, create_service_manifest

logger = logging.getLogger(__name__)


class TerminateResult(str, Enum):
    ACK = "ack"
    STILL_DRAINING = "still-draining"


def replica_state(pod):
    """Map a pod onto the replica state model."""
    labels = pod.metadata.labels or {}
    if pod.status.phase in ("Succeeded", "Failed"):
        return ReplicaState.TERMINATED
    if pod.metadata.deletion_timestamp or labels.get(crd.LABEL_DRAINING) == "true":
        return ReplicaState.DRAINING
    if not is_pod_ready(pod):
        return ReplicaState.PROVISIONING
    if labels.get(crd.LABEL_SERVING) == "true":
        return ReplicaState.SERVING
    return ReplicaState.WARM


class KubernetesProvisioner:
    """Creates, drains and lists agent replica pods for a pool.

    Pod names are deterministic (``<pool>-<role>-<ordinal>``, lowest free
    ordinal first), so a retried create for a slot that already exists comes
    back as a 409 and is treated as success rather than a second replica.
    """

    def __init__(self, v1, default_image=crd.DEFAULT_IMAGE):
        self.v1 = v1
        self.default_image = default_image

    def _list_pods(self, pool):
        try:
            return self.v1.list_namespaced_pod(
                namespace=pool.namespace, label_selector=pool.selector
            ).items
        except ApiException as e:
            logger.error(f"Error listing replicas for {pool.id}: {e}")
            raise from_api_exception(e, f"listing replicas for {pool.id}") from e

    def list_replicas(self, pool):
        replicas = []
        for pod in self._list_pods(pool):
            labels = pod.metadata.labels or {}
            created = pod.metadata.creation_timestamp
            replicas.append(
                Replica(
                    id=pod.metadata.name,
                    state=replica_state(pod),
                    warm=labels.get(crd.LABEL_ROLE) == crd.ROLE_WARM,
                    unschedulable=is_pod_unschedulable(pod),
                    created_at=created.timestamp() if created else 0.0,
                )
            )
        return replicas

    def _next_name(self, pool, warm):
        role = "w" if warm else "s"
        pattern = re.compile(rf"^{re.escape(pool.name)}-{role}-(\d+)$")
        taken = set()
        for pod in self._list_pods(pool):
            match = pattern.match(pod.metadata.name)
            if match:
                taken.add(int(match.group(1)))
        ordinal = 0
        while ordinal in taken:
            ordinal += 1
        return f"{pool.name}-{role}-{ordinal}"

    def create_replica(self, pool, model_refs, warm):
        """Create one replica pod and return its id."""
        pod_name = self._next_name(pool, warm)
        image = pool.image or self.default_image
        pod = create_replica_pod_manifest(pod_name, pool, model_refs or pool.model_refs, warm, image)

        try:
            self.v1.create_namespaced_pod(namespace=pool.namespace, body=pod)
            logger.info(f"Created {'warm' if warm else 'serving'} replica {pod_name} for {pool.id}")
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Replica {pod_name} already exists")
                return pod_name
            logger.error(f"Failed to create replica {pod_name}: {e}")
            raise from_api_exception(e, f"creating replica {pod_name}") from e
        return pod_name

    def activate_replica(self, pool, replica_id):
        """Move a warm-held replica into serving."""
        return self._patch_labels(pool, replica_id, {crd.LABEL_SERVING: "true"})

    def deactivate_replica(self, pool, replica_id):
        """Take a serving replica out of routing, keeping it warm."""
        return self._patch_labels(pool, replica_id, {crd.LABEL_SERVING: "false"})

    def terminate_replica(self, pool, replica_id):
        """Drain then delete a replica.

        The first call takes the pod out of routing and marks it draining.
        Later calls delete it once it reports no active sessions. A pod that
        never became ready has nothing to drain and is deleted at once.
        """
        try:
            pod = self.v1.read_namespaced_pod(name=replica_id, namespace=pool.namespace)
        except ApiException as e:
            if e.status == 404:
                return TerminateResult.ACK
            raise from_api_exception(e, f"reading replica {replica_id}") from e

        if pod.metadata.deletion_timestamp:
            return TerminateResult.ACK

        labels = pod.metadata.labels or {}
        if pod.status.phase != "Running" or not is_pod_ready(pod):
            self._delete_pod(pool, replica_id)
            return TerminateResult.ACK

        if labels.get(crd.LABEL_DRAINING) != "true":
            self._patch_labels(
                pool, replica_id, {crd.LABEL_DRAINING: "true", crd.LABEL_SERVING: "false"}
            )
            logger.info(f"Draining replica {replica_id} of {pool.id}")
            return TerminateResult.STILL_DRAINING

        sessions = (pod.metadata.annotations or {}).get(crd.ANNOTATION_ACTIVE_SESSIONS)
        if sessions in (None, "", "0"):
            self._delete_pod(pool, replica_id)
            return TerminateResult.ACK

        logger.debug(f"Replica {replica_id} still has {sessions} active session(s)")
        return TerminateResult.STILL_DRAINING

    def delete_all(self, pool):
        """Delete every replica of a pool, ignoring ones already gone."""
        for pod in self._list_pods(pool):
            self._delete_pod(pool, pod.metadata.name)

    def ensure_service(self, pool):
        """Ensure the pool's Service exists, create if not."""
        try:
            self.v1.read_namespaced_service(name=pool.name, namespace=pool.namespace)
            return True
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Error checking service for {pool.id}: {e}")
                raise from_api_exception(e, f"reading service for {pool.id}") from e

        logger.info(f"Creating service {pool.name} for {pool.id}")
        try:
            self.v1.create_namespaced_service(
                namespace=pool.namespace, body=create_service_manifest(pool)
            )
        except ApiException as e:
            if e.status != 409:
                logger.error(f"Failed to create service for {pool.id}: {e}")
                raise from_api_exception(e, f"creating service for {pool.id}") from e
        return True

    def _patch_labels(self, pool, replica_id, labels):
        try:
            self.v1.patch_namespaced_pod(
                name=replica_id,
                namespace=pool.namespace,
                body={"metadata": {"labels": labels}},
            )
            return True
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Replica {replica_id} disappeared before relabel")
                return False
            raise from_api_exception(e, f"relabelling replica {replica_id}") from e

    def _delete_pod(self, pool, replica_id):
        try:
            self.v1.delete_namespaced_pod(name=replica_id, namespace=pool.namespace)
            logger.info(f"Deleted replica {replica_id} of {pool.id}")
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Error deleting replica {replica_id}: {e}")
                raise from_api_exception(e, f"deleting replica {replica_id}") from e
