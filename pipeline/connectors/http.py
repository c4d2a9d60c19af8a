"""
Cursor-paginated REST connector with authentication, rate limiting, and retry logic.

This module provides:
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to prevent hammering a failing API
- Rate limiting protection (honours Retry-After)
- Mapping of HTTP failures onto the pipeline exception hierarchy
"""

import httpx
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone
from core.exceptions import (
    ConnectorError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
)
from pipeline.connectors.base import Connector, Page
import logging

logger = logging.getLogger(__name__)


def _dig(data: Any, path: str) -> Any:
    """Follow a dotted path ("pages.nextKey") through nested dicts."""
    if isinstance(data, dict) and path in data:
        # literal keys may contain dots ("@odata.nextLink")
        return data[path]
    for part in path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


@dataclass(frozen=True)
class Endpoint:
    """Where one entity type lives in an integration's API and how it pages."""
    path: str
    records_key: str = "items"
    next_cursor_key: str = "next_cursor"
    cursor_param: Optional[str] = "cursor"
    page_size_param: Optional[str] = "page_size"
    page_size: int = 100
    # cursor is a full URL to request as-is (Graph @odata.nextLink style)
    cursor_is_url: bool = False
    extra_params: Optional[Dict[str, Any]] = None
    # the response body is one record, not a page
    single_record: bool = False


class CircuitBreaker:
    """
    Opens after `threshold` consecutive failures and rejects calls for
    `reset_timeout` seconds. One breaker is shared by every connector
    built for the same data source.
    """

    def __init__(self, name: str, threshold: int = 5, reset_timeout: int = 60):
        self.name = name
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.open_until: Optional[datetime] = None

    def is_open(self) -> bool:
        if self.open_until is None:
            return False

        if datetime.now(timezone.utc) >= self.open_until:
            logger.info(f"Circuit breaker reset for {self.name}")
            self.failures = 0
            self.open_until = None
            return False

        return True

    def record_failure(self):
        self.failures += 1

        if self.failures >= self.threshold:
            self.open_until = datetime.now(timezone.utc) + timedelta(seconds=self.reset_timeout)
            logger.warning(
                f"Circuit breaker opened for {self.name}. "
                f"Will retry after {self.reset_timeout} seconds."
            )

    def record_success(self):
        self.failures = 0
        self.open_until = None


class HTTPConnector(Connector):
    """
    Fetch one page of an integration endpoint per call.

    Features:
    - Bearer token authentication plus integration-specific headers
    - Opaque cursors (query parameter or full next-page URL)
    - Retry with exponential backoff on timeouts, network errors and 5xx
    - 429 handling via Retry-After
    - Shared circuit breaker

    Attributes:
        max_retries: Maximum number of attempts per page (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
    """

    def __init__(
        self,
        base_url: str,
        endpoint: Endpoint,
        api_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        health_path: Optional[str] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self.name = name or self.base_url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.health_path = health_path
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.name)

        self.headers = {"Accept": "application/json"}
        if api_token:
            self.headers["Authorization"] = f"Bearer {api_token}"
        self.headers.update(headers or {})

        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def _request_for(self, cursor: Optional[str]):
        endpoint = self.endpoint
        if cursor and endpoint.cursor_is_url:
            return cursor, {}

        params: Dict[str, Any] = dict(endpoint.extra_params or {})
        if endpoint.page_size_param:
            params[endpoint.page_size_param] = endpoint.page_size
        if cursor and endpoint.cursor_param:
            params[endpoint.cursor_param] = cursor
        return f"{self.base_url}{endpoint.path}", params

    async def _make_request_with_retry(self, url: str, params: Dict[str, Any]) -> httpx.Response:
        """
        Make HTTP request with retry logic and exponential backoff.

        Raises:
            AuthenticationError / ResourceNotFoundError: immediately
            RateLimitError / NetworkError: once retries are exhausted
            ConnectorError: circuit open or unexpected failure
        """
        if self.circuit_breaker.is_open():
            raise ConnectorError(
                f"Circuit breaker is open for {self.name}",
                context={
                    "connector": self.name,
                    "url": url,
                    "open_until": self.circuit_breaker.open_until.isoformat()
                }
            )

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            delay = self.retry_delay * (2 ** attempt)
            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")
                response = await self._client.get(url, headers=self.headers, params=params)
            except httpx.TimeoutException as e:
                if not last_attempt:
                    logger.warning(f"Request timeout. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self.circuit_breaker.record_failure()
                raise NetworkError(
                    f"Request timeout after {self.max_retries} retries",
                    context={"url": url, "connector": self.name, "timeout": self.timeout, "retry_count": attempt + 1},
                    original_exception=e
                )
            except httpx.TransportError as e:
                if not last_attempt:
                    logger.warning(f"Network error. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self.circuit_breaker.record_failure()
                raise NetworkError(
                    f"Network error after {self.max_retries} retries",
                    context={"url": url, "connector": self.name, "retry_count": attempt + 1},
                    original_exception=e
                )

            if response.status_code in (401, 403):
                self.circuit_breaker.record_failure()
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={"status_code": response.status_code, "url": url, "connector": self.name}
                )

            if response.status_code == 404:
                self.circuit_breaker.record_failure()
                raise ResourceNotFoundError(
                    f"Resource not found: {url}",
                    context={"status_code": 404, "url": url, "connector": self.name}
                )

            if response.status_code == 429:
                retry_after = int(response.headers.get("Retry-After", delay))
                if not last_attempt:
                    logger.warning(f"Rate limited. Retrying after {retry_after} seconds")
                    await asyncio.sleep(retry_after)
                    continue
                self.circuit_breaker.record_failure()
                raise RateLimitError(
                    f"Rate limit exceeded for {url}",
                    context={"status_code": 429, "url": url, "connector": self.name, "retry_count": attempt + 1},
                    retry_after=retry_after
                )

            if response.status_code >= 500:
                if not last_attempt:
                    logger.warning(
                        f"Server error {response.status_code}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self.circuit_breaker.record_failure()
                raise NetworkError(
                    f"Server error after {self.max_retries} retries",
                    context={
                        "status_code": response.status_code,
                        "url": url,
                        "connector": self.name,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500]
                    }
                )

            if response.status_code >= 400:
                self.circuit_breaker.record_failure()
                raise ConnectorError(
                    f"Unexpected status {response.status_code} from {url}",
                    context={"status_code": response.status_code, "url": url, "connector": self.name}
                )

            self.circuit_breaker.record_success()
            return response

        raise ConnectorError("Max retries exceeded", context={"url": url, "connector": self.name})

    async def fetch(self, cursor: Optional[str] = None) -> Page:
        url, params = self._request_for(cursor)
        response = await self._make_request_with_retry(url, params)

        try:
            data = response.json()
        except ValueError as e:
            raise ConnectorError(
                "Failed to parse JSON response",
                context={"url": url, "connector": self.name, "response_body": response.text[:500]},
                original_exception=e
            )

        if self.endpoint.single_record:
            records: List[Dict[str, Any]] = [data] if data else []
            next_cursor = None
        elif isinstance(data, list):
            records = data
            next_cursor = None
        else:
            records = _dig(data, self.endpoint.records_key) or []
            next_cursor = _dig(data, self.endpoint.next_cursor_key)

        next_cursor = str(next_cursor) if next_cursor else None
        logger.debug(f"Fetched {len(records)} records from {url} (more: {next_cursor is not None})")
        return Page(records=records, next_cursor=next_cursor, has_more=next_cursor is not None)

    async def check_health(self) -> bool:
        url = f"{self.base_url}{self.health_path or self.endpoint.path}"
        try:
            response = await self._client.get(url, headers=self.headers, params={}, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning(f"Health check for {self.name} failed: {e}")
            return False
        return response.status_code < 400
