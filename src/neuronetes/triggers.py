"""Scaling trigger expressions and the replica targets they imply."""

import math
import re
from dataclasses import dataclass

from . import crd
from .errors import InvalidSpecError

_EXPRESSION = re.compile(
    r"^\s*(?P<signal>[a-z][a-z0-9_.:-]*)\s*(?P<op>>=|>)\s*(?P<threshold>\d+(?:\.\d+)?)\s*$"
)
_TARGET_NUMBER = re.compile(r"^\d+(?:\.\d+)?")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value):
    """Parse a Kubernetes style duration ("30s", "5m", "1m30s") into seconds."""
    text = str(value).strip()
    if not text:
        raise InvalidSpecError("empty duration")
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise InvalidSpecError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds):
    return f"{seconds:.3f}s"


@dataclass(frozen=True)
class Trigger:
    """A threshold over one named signal, e.g. ``concurrent-sessions > 100``.

    With ``target_per_replica`` set the implied replica count is the signal
    divided by per-replica capacity. Without it, the current replica count
    is scaled by how far the signal sits from the threshold.
    """

    signal: str
    operator: str
    threshold: float
    target_per_replica: float = None
    window: str = crd.DEFAULT_WINDOW

    @property
    def expression(self):
        return f"{self.signal} {self.operator} {self.threshold:g}"

    def fires(self, value):
        if value is None:
            return False
        if self.operator == ">=":
            return value >= self.threshold
        return value > self.threshold

    def implied_replicas(self, value, current):
        """Replica count this trigger asks for, or None if it cannot tell."""
        if value is None:
            return None
        if self.target_per_replica:
            return max(0, math.ceil(value / self.target_per_replica))
        return max(0, math.ceil(max(current, 1) * value / self.threshold))


def parse_trigger(expression, target_per_replica=None, window=None):
    match = _EXPRESSION.match(str(expression or ""))
    if not match:
        raise InvalidSpecError(f"invalid trigger expression: {expression!r}")

    threshold = float(match.group("threshold"))
    if target_per_replica is not None:
        try:
            target_per_replica = float(target_per_replica)
        except (TypeError, ValueError):
            raise InvalidSpecError(
                f"targetPerReplica must be a number in trigger {expression!r}"
            ) from None
        if target_per_replica <= 0:
            raise InvalidSpecError(
                f"targetPerReplica must be positive in trigger {expression!r}"
            )
    elif threshold <= 0:
        raise InvalidSpecError(
            f"trigger {expression!r} needs a positive threshold or targetPerReplica"
        )

    window = window or crd.DEFAULT_WINDOW
    parse_duration(window)

    return Trigger(
        signal=match.group("signal"),
        operator=match.group("op"),
        threshold=threshold,
        target_per_replica=target_per_replica,
        window=window,
    )


def triggers_from_spec(spec):
    """Collect triggers from ``spec.triggers`` and ``spec.autoscaling.metrics``."""
    triggers = []
    for item in spec.get("triggers") or []:
        if isinstance(item, str):
            triggers.append(parse_trigger(item))
            continue
        triggers.append(
            parse_trigger(
                item.get("expression"),
                target_per_replica=item.get("targetPerReplica"),
                window=item.get("window"),
            )
        )

    autoscaling = spec.get("autoscaling") or {}
    for metric in autoscaling.get("metrics") or []:
        # Targets may carry units ("500ms"); only the number is compared.
        target = _TARGET_NUMBER.match(str(metric.get("target", "")).strip())
        expression = f"{metric.get('type')} > {target.group(0) if target else metric.get('target')}"
        triggers.append(parse_trigger(expression, window=metric.get("averagingWindow")))

    return triggers
