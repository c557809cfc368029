"""Query execution against a Prometheus-compatible HTTP API."""
from string import Template
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
import logging
import re

import httpx
from pydantic import BaseModel

from apm_metrics.config import SourceConfig

logger = logging.getLogger(__name__)

# Points per range query when no explicit step is configured
TARGET_POINTS = 250

UNRESOLVED_PLACEHOLDER = re.compile(r"\$\{?[_a-zA-Z]\w*")


class QueryRequest(BaseModel):
    """One metric query over a time window."""
    query: str
    start_time: int
    end_time: int


class QueryExecutionError(Exception):
    """Raised when the backend rejects or fails a query."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# Injected collaborator: request in, raw response payload out
QueryRunner = Callable[[QueryRequest], Awaitable[Any]]


def render_query(query: str, variables: Optional[Mapping[str, str]] = None) -> str:
    """Fill ``$name`` placeholders; unknown ones are left in place and logged."""
    rendered = Template(query).safe_substitute(variables or {})
    unresolved = UNRESOLVED_PLACEHOLDER.findall(rendered)
    if unresolved:
        logger.warning(f"Query has unresolved placeholders {sorted(set(unresolved))}: {rendered[:80]}")
    return rendered


def step_for(request: QueryRequest, step_s: Optional[int] = None) -> int:
    """Resolution step in seconds for a range query."""
    if step_s:
        return step_s
    span = max(0, request.end_time - request.start_time)
    return max(1, span // TARGET_POINTS)


class PrometheusQueryRunner:
    """Async runner over ``/api/v1/query_range``; timeouts and pooling live here."""

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.url,
            timeout=config.timeout_s,
            headers=config.headers,
        )

    async def __call__(self, request: QueryRequest) -> Dict[str, Any]:
        params = {
            "query": request.query,
            "start": request.start_time,
            "end": request.end_time,
            "step": step_for(request, self.config.step_s),
        }
        try:
            response = await self._client.get("/api/v1/query_range", params=params)
        except httpx.HTTPError as e:
            raise QueryExecutionError(f"Query transport failed: {e}") from e

        if response.status_code >= 400:
            raise QueryExecutionError(
                f"Query failed with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise QueryExecutionError(f"Query returned invalid JSON: {e}") from e

        if isinstance(payload, dict) and payload.get("status") not in (None, "success"):
            raise QueryExecutionError(
                f"Query error: {payload.get('errorType', 'unknown')}: {payload.get('error', '')}"
            )

        logger.debug(f"Query ok: {request.query[:80]}")
        return payload

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
