"""Status conditions and the status reporter."""

import logging
from datetime import datetime, timezone

from kubernetes.client.rest import ApiException

from . import crd

logger = logging.getLogger(__name__)


def to_timestamp(epoch):
    """Render epoch seconds as an RFC 3339 UTC timestamp."""
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def from_timestamp(value):
    """Parse an RFC 3339 timestamp back into epoch seconds."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Could not parse timestamp {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def set_condition(conditions, type_, status, reason, message="", now=None):
    """Return a copy of ``conditions`` with ``type_`` set.

    lastTransitionTime only moves when the status flips, so re-asserting the
    same condition leaves the list unchanged.
    """
    status_str = "True" if status else "False"
    result = []
    found = False
    for cond in conditions or []:
        if cond.get("type") != type_:
            result.append(dict(cond))
            continue
        found = True
        updated = dict(cond)
        if cond.get("status") != status_str:
            updated["lastTransitionTime"] = to_timestamp(now)
        updated.update({"status": status_str, "reason": reason, "message": message})
        result.append(updated)

    if not found:
        result.append(
            {
                "type": type_,
                "status": status_str,
                "reason": reason,
                "message": message,
                "lastTransitionTime": to_timestamp(now),
            }
        )
    return result


def get_condition(conditions, type_):
    for cond in conditions or []:
        if cond.get("type") == type_:
            return cond
    return None


class StatusReporter:
    """Persists computed status onto the declared resource.

    Fire-and-forget: failures are logged and never raised. The next tick
    re-derives and re-persists the status.
    """

    def __init__(self, custom_api):
        self.custom_api = custom_api

    def persist(self, plural, namespace, name, fields):
        try:
            self.custom_api.patch_namespaced_custom_object_status(
                group=crd.GROUP,
                version=crd.VERSION,
                namespace=namespace,
                plural=plural,
                name=name,
                body={"status": fields},
            )
            logger.debug(f"Persisted status for {plural}/{namespace}/{name}")
            return True
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{plural}/{namespace}/{name} is gone, skipping status update")
            else:
                logger.error(f"Error persisting status for {plural}/{namespace}/{name}: {e}")
        except Exception as e:
            logger.error(f"Error persisting status for {plural}/{namespace}/{name}: {e}")
        return False
