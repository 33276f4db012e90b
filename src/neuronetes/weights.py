"""Weight store client.

The store owns the bytes and the per-node cache; the operator only ever
holds an opaque placement handle. Concurrent placement requests for the same
URI are coalesced by the store, so "already placed" and "in progress" are
ordinary responses here.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import quote

import httpx

from .errors import TransientError, WeightValidationError

logger = logging.getLogger(__name__)


class PlacementState(str, Enum):
    PLACED = "placed"
    IN_PROGRESS = "in-progress"


@dataclass
class Placement:
    handle: str
    state: PlacementState = PlacementState.IN_PROGRESS


@dataclass
class Validation:
    ok: bool
    reason: str = ""


@dataclass
class Residency:
    nodes: list = field(default_factory=list)
    evicted: bool = False

    @property
    def resident(self):
        return bool(self.nodes) and not self.evicted


class HttpWeightStore:
    """Talks to the weight cache controller's JSON API."""

    def __init__(self, base_url, timeout=10.0, client=None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)
        logger.info(f"Weight store client initialized: url={self.base_url}")

    def close(self):
        self._client.close()

    def _request(self, method, path, **kwargs):
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"weight store timeout on {method} {path}: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"weight store unreachable on {method} {path}: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(
                f"weight store {method} {path} failed: {response.status_code} {response.text}"
            )
        return response

    def fetch(self, weights_uri):
        """Request placement of ``weights_uri`` in the cache."""
        response = self._request("POST", "/v1/placements", json={"uri": weights_uri})
        if response.status_code in (400, 422):
            raise WeightValidationError(
                f"weight store rejected {weights_uri}: {response.text}"
            )
        if response.status_code not in (200, 201, 202, 409):
            raise TransientError(
                f"unexpected weight store response for {weights_uri}: {response.status_code}"
            )

        data = response.json()
        handle = data.get("handle")
        if not handle:
            raise TransientError(f"weight store returned no handle for {weights_uri}")
        try:
            state = PlacementState(data.get("state", PlacementState.IN_PROGRESS.value))
        except ValueError:
            state = PlacementState.IN_PROGRESS
        logger.debug(f"Placement for {weights_uri}: handle={handle} state={state.value}")
        return Placement(handle=handle, state=state)

    def validate(self, handle):
        response = self._request("POST", f"/v1/placements/{quote(handle, safe='')}/validate")
        if response.status_code == 404:
            return Validation(ok=False, reason="placement not found")
        data = response.json()
        return Validation(ok=bool(data.get("valid")), reason=data.get("reason", ""))

    def residency(self, handle):
        response = self._request("GET", f"/v1/placements/{quote(handle, safe='')}/residency")
        if response.status_code == 404:
            return Residency(nodes=[], evicted=True)
        data = response.json()
        return Residency(
            nodes=list(data.get("nodes") or []),
            evicted=bool(data.get("evicted", False)),
        )

    def release(self, handle):
        response = self._request("DELETE", f"/v1/placements/{quote(handle, safe='')}")
        if response.status_code not in (200, 202, 204, 404):
            logger.warning(f"Unexpected response releasing {handle}: {response.status_code}")
