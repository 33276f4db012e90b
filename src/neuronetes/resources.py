"""Typed views over AgentPool and Model bodies, and the Replica record."""

from dataclasses import dataclass, field
from enum import Enum

from . import crd
from .errors import InvalidSpecError
from .triggers import triggers_from_spec


def _integer(value, field_name):
    """Whole numbers only; 3.0 is accepted, 12.5, strings and null are not."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != int(value):
        raise InvalidSpecError(f"{field_name} must be an integer, got {value!r}")
    return int(value)


class ReplicaState(str, Enum):
    PROVISIONING = "Provisioning"
    WARM = "Warm"
    SERVING = "Serving"
    DRAINING = "Draining"
    TERMINATED = "Terminated"


@dataclass
class Replica:
    """One unit of compute bound to a pool, as observed from the provisioner."""

    id: str
    state: ReplicaState
    warm: bool = False
    unschedulable: bool = False
    created_at: float = 0.0


@dataclass(frozen=True)
class ModelRef:
    name: str
    namespace: str

    @property
    def id(self):
        return crd.model_id(self.namespace, self.name)

    def __str__(self):
        return f"{self.namespace}/{self.name}"


@dataclass
class ScalingPolicy:
    max_change_absolute: int = None
    max_change_percent: int = None

    @classmethod
    def from_spec(cls, data):
        if not data:
            return None
        absolute = data.get("maxChangeAbsolute")
        percent = data.get("maxChangePercent")
        return cls(
            max_change_absolute=None if absolute is None else _integer(absolute, "maxChangeAbsolute"),
            max_change_percent=None if percent is None else _integer(percent, "maxChangePercent"),
        )


@dataclass
class AgentPool:
    namespace: str
    name: str
    min_replicas: int
    max_replicas: int
    prewarm_percent: int = 0
    model_refs: list = field(default_factory=list)
    triggers: list = field(default_factory=list)
    scale_up: ScalingPolicy = None
    scale_down: ScalingPolicy = None
    gpu_count: int = 1
    gpu_type: str = None
    image: str = None
    uid: str = None
    generation: int = None
    status: dict = field(default_factory=dict)

    @property
    def id(self):
        return crd.pool_id(self.namespace, self.name)

    @property
    def selector(self):
        return f"{crd.LABEL_POOL}={self.name}"

    @classmethod
    def from_body(cls, body):
        """Build and validate a pool from a raw custom object body."""
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}
        namespace = meta.get("namespace", "default")
        name = meta.get("name")

        min_replicas = _integer(spec.get("minReplicas", 0), "minReplicas")
        max_replicas = _integer(spec.get("maxReplicas", 1), "maxReplicas")
        prewarm_percent = _integer(spec.get("prewarmPercent") or 0, "prewarmPercent")

        if min_replicas < 0:
            raise InvalidSpecError(f"minReplicas must be >= 0, got {min_replicas}")
        if max_replicas < 1:
            raise InvalidSpecError(f"maxReplicas must be >= 1, got {max_replicas}")
        if min_replicas > max_replicas:
            raise InvalidSpecError(
                f"minReplicas ({min_replicas}) exceeds maxReplicas ({max_replicas})"
            )
        if not 0 <= prewarm_percent <= 100:
            raise InvalidSpecError(f"prewarmPercent must be within 0-100, got {prewarm_percent}")

        model_refs = [_model_ref(ref, namespace) for ref in spec.get("modelRefs") or []]
        if not model_refs:
            raise InvalidSpecError("at least one modelRef is required")

        behavior = (spec.get("autoscaling") or {}).get("behavior") or {}
        gpu = spec.get("gpuRequirements") or {}

        return cls(
            namespace=namespace,
            name=name,
            min_replicas=min_replicas,
            max_replicas=max_replicas,
            prewarm_percent=prewarm_percent,
            model_refs=model_refs,
            triggers=triggers_from_spec(spec),
            scale_up=ScalingPolicy.from_spec(behavior.get("scaleUp")),
            scale_down=ScalingPolicy.from_spec(behavior.get("scaleDown")),
            gpu_count=_integer(gpu.get("count", 1), "gpuRequirements.count"),
            gpu_type=gpu.get("type"),
            image=spec.get("image"),
            uid=meta.get("uid"),
            generation=meta.get("generation"),
            status=dict(body.get("status") or {}),
        )


def _model_ref(ref, default_namespace):
    if isinstance(ref, str):
        return ModelRef(name=ref, namespace=default_namespace)
    if not ref.get("name"):
        raise InvalidSpecError(f"modelRef without a name: {ref!r}")
    return ModelRef(name=ref["name"], namespace=ref.get("namespace") or default_namespace)


@dataclass
class Model:
    namespace: str
    name: str
    weights_uri: str
    gpu_count: int = 1
    gpu_class: str = None
    uid: str = None
    annotations: dict = field(default_factory=dict)
    status: dict = field(default_factory=dict)

    @property
    def id(self):
        return crd.model_id(self.namespace, self.name)

    @classmethod
    def from_body(cls, body):
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}
        weights_uri = spec.get("weightsURI")
        if not weights_uri:
            raise InvalidSpecError("weightsURI is required")

        resources = spec.get("resources") or {}
        return cls(
            namespace=meta.get("namespace", "default"),
            name=meta.get("name"),
            weights_uri=weights_uri,
            gpu_count=_integer(resources.get("gpu", 1), "resources.gpu"),
            gpu_class=resources.get("gpuClass"),
            uid=meta.get("uid"),
            annotations=dict(meta.get("annotations") or {}),
            status=dict(body.get("status") or {}),
        )
