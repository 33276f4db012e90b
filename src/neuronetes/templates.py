"""Kubernetes resource templates."""

import json

from kubernetes import client

from . import crd
from .k8s import owner_reference

GPU_RESOURCE = "nvidia.com/gpu"
GPU_PRODUCT_LABEL = "nvidia.com/gpu.product"
AGENT_PORT = 8000


def create_replica_pod_manifest(pod_name, pool, model_refs, warm, image):
    """Create an agent replica pod manifest.

    Replicas start with the serving label off; the reconciler flips it once
    every referenced Model is Ready, which is what puts the pod behind the
    pool's Service.
    """
    models = [str(ref) for ref in model_refs]
    owner_refs = [owner_reference(pool)] if pool.uid else None

    node_selector = None
    if pool.gpu_type:
        node_selector = {GPU_PRODUCT_LABEL: pool.gpu_type}

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=pod_name,
            namespace=pool.namespace,
            labels={
                "app": "neuronetes-agent",
                crd.LABEL_POOL: pool.name,
                crd.LABEL_ROLE: crd.ROLE_WARM if warm else crd.ROLE_SERVING,
                crd.LABEL_SERVING: "false",
            },
            annotations={
                crd.ANNOTATION_MODELS: json.dumps(models),
            },
            owner_references=owner_refs,
        ),
        spec=client.V1PodSpec(
            restart_policy="Always",
            node_selector=node_selector,
            containers=[
                client.V1Container(
                    name="agent",
                    image=image,
                    env=[
                        client.V1EnvVar(name="NEURONETES_AGENTPOOL", value=pool.name),
                        client.V1EnvVar(name="NEURONETES_MODELS", value=",".join(models)),
                        client.V1EnvVar(name="NEURONETES_WARM", value=str(warm).lower()),
                    ],
                    ports=[client.V1ContainerPort(name="http", container_port=AGENT_PORT)],
                    readiness_probe=client.V1Probe(
                        http_get=client.V1HTTPGetAction(path="/healthz", port="http"),
                        period_seconds=5,
                    ),
                    resources=client.V1ResourceRequirements(
                        requests={GPU_RESOURCE: str(pool.gpu_count)},
                        limits={GPU_RESOURCE: str(pool.gpu_count)},
                    ),
                )
            ],
        ),
    )


def create_service_manifest(pool):
    """Service routing traffic to the pool's serving replicas only."""
    owner_refs = [owner_reference(pool)] if pool.uid else None
    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=pool.name,
            namespace=pool.namespace,
            labels={"app": "neuronetes-agent", crd.LABEL_POOL: pool.name},
            owner_references=owner_refs,
        ),
        spec=client.V1ServiceSpec(
            selector={crd.LABEL_POOL: pool.name, crd.LABEL_SERVING: "true"},
            ports=[client.V1ServicePort(name="http", port=80, target_port="http")],
        ),
    )
