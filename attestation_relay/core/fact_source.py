"""
External Fact Sources

A FactSource executes one FactQuery and reports the outcome as a
FactResult. Fetch failures are values, not exceptions: every network,
status, shape or extraction problem comes back as
FactResult(success=False, reason=<kind>) so the orchestrator can branch
on it directly.

Sources make exactly one outbound call per fetch and never retry.
"""

from typing import Any, Optional, Protocol

import httpx

from ..observability import get_logger
from ..schemas.actions import FactValue
from ..schemas.records import FactFailureKind, FactQuery, FactResult

logger = get_logger(__name__)


class FactSource(Protocol):
    """Anything that can resolve a FactQuery into a FactResult."""

    async def fetch(self, query: FactQuery) -> FactResult:
        ...


_MISSING = object()


def extract_value(body: Any, path: tuple[str, ...]) -> Any:
    """
    Walk a decoded JSON body along an extraction path.

    Numeric path segments index into lists. Returns _MISSING when any
    segment does not resolve.
    """
    current = body
    for segment in path:
        if isinstance(current, dict):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (int, float, str)) and not isinstance(value, bool)


class HttpFactSource:
    """
    Fetches a JSON document over HTTPS and extracts one scalar.

    The client is injected so tests (and the app lifespan) control its
    lifetime; without one, a short-lived client is opened per fetch.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self._client = client
        self._timeout = timeout

    async def fetch(self, query: FactQuery) -> FactResult:
        try:
            if self._client is not None:
                response = await self._request(self._client, query)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                    response = await self._request(client, query)
        except httpx.TimeoutException as e:
            logger.warning("Fact source timed out", url=query.safe_url, error=type(e).__name__)
            return FactResult.failed(query.source_id, FactFailureKind.TIMEOUT, type(e).__name__)
        except httpx.HTTPError as e:
            logger.warning("Fact source unreachable", url=query.safe_url, error=type(e).__name__)
            return FactResult.failed(query.source_id, FactFailureKind.NETWORK, type(e).__name__)

        if not response.is_success:
            logger.warning(
                "Fact source returned error status",
                url=query.safe_url,
                status_code=response.status_code,
            )
            return FactResult.failed(
                query.source_id,
                FactFailureKind.HTTP_STATUS,
                f"status={response.status_code}",
            )

        try:
            body = response.json()
        except ValueError:
            logger.warning("Fact source body is not JSON", url=query.safe_url)
            return FactResult.failed(query.source_id, FactFailureKind.BAD_SHAPE, "body is not JSON")

        if not isinstance(body, dict):
            return FactResult.failed(
                query.source_id,
                FactFailureKind.BAD_SHAPE,
                f"expected JSON object, got {type(body).__name__}",
            )

        value = extract_value(body, query.extraction_path)
        if value is _MISSING or not _is_scalar(value):
            logger.warning(
                "Fact source field missing",
                url=query.safe_url,
                path=query.jq_filter,
            )
            return FactResult.failed(
                query.source_id,
                FactFailureKind.MISSING_FIELD,
                f"{query.jq_filter} did not resolve to a scalar",
            )

        logger.debug("Fact fetched", url=query.safe_url, value=value)
        return FactResult.ok(query.source_id, value)

    async def _request(self, client: httpx.AsyncClient, query: FactQuery) -> httpx.Response:
        return await client.request(
            query.method,
            query.full_url,
            timeout=httpx.Timeout(self._timeout),
        )


class DeterministicFactSource:
    """
    Returns a fixed value for every query.

    Backs action types whose measurement is supplied out of band
    (e.g. a trip distance already validated upstream) and stands in
    for live sources in tests and local runs.
    """

    def __init__(self, value: Optional[FactValue] = None,
                 failure: Optional[FactFailureKind] = None):
        if value is None and failure is None:
            raise ValueError("DeterministicFactSource needs a value or a failure kind")
        self.value = value
        self.failure = failure
        self.calls = 0

    async def fetch(self, query: FactQuery) -> FactResult:
        self.calls += 1
        if self.failure is not None:
            return FactResult.failed(query.source_id, self.failure, "configured failure")
        return FactResult.ok(query.source_id, self.value)
