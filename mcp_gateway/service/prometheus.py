"""
PromQL query backend.

Exposes a ``PromQLQuery`` function tool when a Prometheus URL is configured
and executes instant or range queries against its HTTP API.
"""

import logging
import time
from typing import Any, Optional

import httpx

from .config import GatewaySettings

logger = logging.getLogger(__name__)

PROMQL_TOOL_NAME = "PromQLQuery"
DEFAULT_STEP = "60s"

_PROMQL_DESCRIPTION = """Execute a PromQL query against the Prometheus time-series database.

Supports two query modes:
- **Instant query**: Returns the current value of the expression (use only 'query' parameter)
- **Range query**: Returns values over a time range (use 'query', 'start', 'end', and optionally 'step' parameters)

**Example - Get all active alerts:**
  query: "ALERTS_FOR_STATE"

**Example - Get alerts for a specific host:**
  query: "ALERTS_FOR_STATE{host_name=\\"some.host.name\\"}"

**Example - Get CPU usage over last hour:**
  query: "rate(system_cpu_usage_seconds_total{mode=\\"user\\"}[5m])"
  start: "2024-01-01T00:00:00Z" (or Unix timestamp)
  end: "2024-01-01T01:00:00Z" (or Unix timestamp)
  step: "60s\""""


def get_promql_tool(settings: GatewaySettings) -> Optional[dict[str, Any]]:
    """
    Function-tool definition for PromQL queries.

    Returns:
        The tool definition, or None when no Prometheus URL is configured
    """
    if not settings.prometheus_url:
        return None

    return {
        "type": "function",
        "name": PROMQL_TOOL_NAME,
        "description": _PROMQL_DESCRIPTION,
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The PromQL query expression to execute."},
                "start": {
                    "type": "string",
                    "description": "Start time for range queries. RFC3339 format or Unix timestamp. Required for range queries.",
                },
                "end": {
                    "type": "string",
                    "description": "End time for range queries. RFC3339 format or Unix timestamp. Required for range queries.",
                },
                "step": {
                    "type": "string",
                    "description": 'Query resolution step width for range queries (e.g., "60s", "5m", "1h"). Defaults to "60s" if not specified.',
                },
            },
            "required": ["query"],
            "additionalProperties": False,
        },
    }


async def execute_promql_query(
    args: dict[str, Any],
    settings: GatewaySettings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict[str, Any]:
    """
    Execute a PromQL query.

    A range query is issued when both ``start`` and ``end`` are given,
    otherwise an instant query. Failures are returned as ``{ok: False, ...}``.

    Args:
        args: Tool arguments (query, start, end, step)
        settings: Gateway settings carrying the Prometheus URL
        http_client: Optional client (a temporary one is created otherwise)

    Returns:
        ``{ok, queryType, resultType, result}`` or a structured error
    """
    base_url = settings.prometheus_url
    if not base_url:
        return {"ok": False, "error": "Prometheus URL not configured (PROMETHEUS_URL not set)"}

    query = args.get("query")
    if not query or not isinstance(query, str):
        return {"ok": False, "error": "Missing required parameter: query"}

    start, end = args.get("start"), args.get("end")
    is_range = bool(start and end)
    if is_range:
        path = "/api/v1/query_range"
        params = {"query": query, "start": start, "end": end, "step": args.get("step") or DEFAULT_STEP}
    else:
        path = "/api/v1/query"
        params = {"query": query}

    url = base_url.rstrip("/") + path
    logger.info(f"[Prometheus] Executing {'range' if is_range else 'instant'} query: {query}")
    started = time.monotonic()

    own_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=settings.prometheus_timeout_seconds)
    try:
        response = await client.get(url, params=params, headers={"Accept": "application/json"})
        if response.status_code >= 400:
            logger.error(f"[Prometheus] Query failed with status {response.status_code}: {response.text[:500]}")
            return {
                "ok": False,
                "error": f"Prometheus query failed: {response.status_code} {response.reason_phrase}",
                "details": response.text,
            }
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"[Prometheus] Query failed: {e}")
        return {"ok": False, "error": f"Failed to execute Prometheus query: {e}"}
    finally:
        if own_client:
            await client.aclose()

    logger.info(f"[Prometheus] Query completed in {(time.monotonic() - started) * 1000:.0f}ms")

    if data.get("status") != "success":
        return {
            "ok": False,
            "error": f"Prometheus query error: {data.get('error') or 'Unknown error'}",
            "errorType": data.get("errorType"),
        }

    payload = data.get("data") or {}
    return {
        "ok": True,
        "queryType": "range" if is_range else "instant",
        "resultType": payload.get("resultType"),
        "result": payload.get("result"),
    }
