"""Metrics provider backed by the Prometheus HTTP API."""

import logging
import math

import httpx

logger = logging.getLogger(__name__)

# PromQL per autoscaling signal. {selector} scopes the series to one pool,
# {window} is the trigger's observation window.
SIGNAL_QUERIES = {
    "concurrent-sessions": "sum(avg_over_time(agent_active_sessions{selector}[{window}]))",
    "ttft-p95": (
        "histogram_quantile(0.95, "
        "sum(rate(agent_time_to_first_token_seconds_bucket{selector}[{window}])) by (le)) * 1000"
    ),
    "tool-call-rate": "sum(rate(agent_tool_calls_total{selector}[{window}]))",
    "gpu-utilization": "avg(avg_over_time(DCGM_FI_DEV_GPU_UTIL{selector}[{window}]))",
    "tokens-in-queue": "sum(avg_over_time(agent_queued_tokens{selector}[{window}]))",
    "queue-depth": "sum(avg_over_time(agent_queue_depth{selector}[{window}]))",
    "tokens-per-second": "sum(rate(agent_generated_tokens_total{selector}[{window}]))",
    "context-length": (
        "histogram_quantile(0.95, "
        "sum(rate(agent_context_length_tokens_bucket{selector}[{window}])) by (le))"
    ),
}


class PrometheusMetricsProvider:
    """Answers ``query(pool, signal, window)`` with a number or None.

    None means the signal is unavailable: the server is unreachable, the
    query failed, returned nothing or returned NaN. Callers treat the
    trigger as not firing.
    """

    def __init__(self, prometheus_url, timeout=10.0, client=None, queries=None):
        self.prometheus_url = prometheus_url.rstrip("/")
        self.queries = dict(SIGNAL_QUERIES)
        if queries:
            self.queries.update(queries)
        self._client = client or httpx.Client(base_url=self.prometheus_url, timeout=timeout)
        logger.info(f"Prometheus metrics provider initialized: url={self.prometheus_url}")

    def close(self):
        self._client.close()

    def build_query(self, pool, signal, window):
        template = self.queries.get(signal)
        if template is None:
            return None
        selector = f'{{namespace="{pool.namespace}",agentpool="{pool.name}"}}'
        return template.replace("{selector}", selector).replace("{window}", window)

    def query(self, pool, signal, window):
        promql = self.build_query(pool, signal, window)
        if promql is None:
            logger.warning(f"No query known for signal {signal!r}")
            return None
        return self.query_scalar(promql)

    def query_scalar(self, promql):
        """Execute a PromQL instant query and return the first sample."""
        try:
            response = self._client.get("/api/v1/query", params={"query": promql})
            if response.status_code != 200:
                logger.error(f"Prometheus query failed: {response.status_code} {response.text}")
                return None

            data = response.json()
            if data.get("status") != "success":
                logger.error(f"Prometheus query error: {data}")
                return None

            result = data["data"]["result"]
            if not result:
                logger.debug(f"Prometheus query returned no results: {promql}")
                return None

            if data["data"].get("resultType") == "scalar":
                value = float(result[1])
            else:
                value = float(result[0]["value"][1])
            if math.isnan(value) or math.isinf(value):
                return None
            return value

        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"Prometheus query exception: {e}")
            return None
