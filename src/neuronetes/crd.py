"""CRD schema constants and helpers."""

# CRD Group and Version
GROUP = "neuronetes.io"
VERSION = "v1alpha1"

# API version string
API_VERSION = f"{GROUP}/{VERSION}"

# Kinds and plurals
AGENTPOOL_KIND = "AgentPool"
AGENTPOOL_PLURAL = "agentpools"
MODEL_KIND = "Model"
MODEL_PLURAL = "models"

# Replica pod labels and annotations
LABEL_POOL = f"{GROUP}/agentpool"
LABEL_ROLE = f"{GROUP}/role"
LABEL_SERVING = f"{GROUP}/serving"
LABEL_DRAINING = f"{GROUP}/draining"
ANNOTATION_MODELS = f"{GROUP}/models"
ANNOTATION_ACTIVE_SESSIONS = f"{GROUP}/active-sessions"
ANNOTATION_REVALIDATE = f"{GROUP}/revalidate"

ROLE_SERVING = "serving"
ROLE_WARM = "warm"

# Condition types
COND_READY = "Ready"
COND_SPEC_VALID = "SpecValid"
COND_MODELS_READY = "ModelsReady"
COND_METRICS_AVAILABLE = "MetricsAvailable"
COND_SATURATED = "Saturated"
COND_CAPACITY = "CapacityAvailable"
COND_DEGRADED = "Degraded"

DEFAULT_WINDOW = "1m"
DEFAULT_IMAGE = "neuronetes/agent-runtime:latest"


def pool_id(namespace, name):
    """Identity key for an AgentPool."""
    return f"{AGENTPOOL_PLURAL}/{namespace}/{name}"


def model_id(namespace, name):
    """Identity key for a Model."""
    return f"{MODEL_PLURAL}/{namespace}/{name}"
