"""
HubSpot CRM Integration Module.
Read-only access to the CRM object list/search APIs and the v4 association
batch-read API, with rate limiting and classified retries.
"""

import httpx
import logging
import asyncio
import time
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime
from collections import defaultdict

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"
HUBSPOT_TIMEOUT = 30.0
HUBSPOT_MAX_REQUESTS_PER_SECOND = 5
HUBSPOT_RATE_LIMIT_WINDOW = 1.0

# Documented maximums for list/search pages and association batch reads
HUBSPOT_MAX_PAGE_SIZE = 100
HUBSPOT_ASSOCIATION_BATCH_SIZE = 100

HUBSPOT_MAX_RETRIES = 5
HUBSPOT_BACKOFF_MIN = 1.0
HUBSPOT_BACKOFF_MAX = 60.0

LAST_MODIFIED_PROPERTY = "hs_lastmodifieddate"


class HubSpotRateLimiter:
    """Sliding-window rate limiter for HubSpot API calls."""

    def __init__(self, max_requests: int = HUBSPOT_MAX_REQUESTS_PER_SECOND, window: float = HUBSPOT_RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._requests = defaultdict(list)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str = "default"):
        async with self._lock:
            now = time.time()
            self._requests[key] = [t for t in self._requests[key] if now - t < self.window]
            if len(self._requests[key]) >= self.max_requests:
                oldest = min(self._requests[key])
                wait_time = self.window - (now - oldest)
                if wait_time > 0:
                    logger.debug(f"HubSpot rate limit: waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)
                    now = time.time()
                    self._requests[key] = [t for t in self._requests[key] if now - t < self.window]
            self._requests[key].append(now)


_hubspot_rate_limiter = HubSpotRateLimiter()


class HubSpotAPIError(Exception):
    """Base class for HubSpot API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(HubSpotAPIError):
    """HTTP 429. Retried; honours the server's Retry-After hint."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class TransientError(HubSpotAPIError):
    """5xx, timeouts and connection errors. Retried up to the attempt budget."""


class FatalError(HubSpotAPIError):
    """Non-retryable: other 4xx, malformed payloads, exhausted retries."""


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_response(response: httpx.Response) -> Optional[HubSpotAPIError]:
    """Map a non-2xx response to the error taxonomy. Returns None for success."""
    status = response.status_code
    if status < 400:
        return None
    if status == 429:
        return RateLimitedError(
            "Rate limit exceeded",
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    body = response.text[:500]
    if status >= 500:
        return TransientError(f"API error {status}: {body}", status_code=status)
    if status == 401:
        return FatalError("Authentication failed. Token may be expired or revoked", status_code=status)
    return FatalError(f"API error {status}: {body}", status_code=status)


class _wait_retry_after:
    """Exponential backoff that defers to a server-supplied Retry-After delay."""

    def __init__(self, minimum: float = HUBSPOT_BACKOFF_MIN, maximum: float = HUBSPOT_BACKOFF_MAX):
        self.maximum = maximum
        self._exponential = wait_exponential(multiplier=minimum, min=minimum, max=maximum)

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            return min(exc.retry_after, self.maximum)
        return self._exponential(retry_state)


class HubSpotCRM:
    """Read-only client for the HubSpot CRM API (private app / bearer token)."""

    def __init__(
        self,
        access_token: str,
        max_retries: int = HUBSPOT_MAX_RETRIES,
        rate_limiter: Optional[HubSpotRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
        backoff_min: float = HUBSPOT_BACKOFF_MIN,
        backoff_max: float = HUBSPOT_BACKOFF_MAX,
    ):
        self.access_token = access_token
        self.max_retries = max(1, max_retries)
        self._rate_limiter = rate_limiter or _hubspot_rate_limiter
        self._transport = transport
        self._sleep = sleep
        self._wait = _wait_retry_after(backoff_min, backoff_max)

    async def _request(self, method: str, path: str, data: dict = None, params: dict = None) -> dict:
        """One HTTP round trip. Raises a classified HubSpotAPIError on failure."""
        await self._rate_limiter.acquire()

        url = f"{HUBSPOT_API_BASE}{path}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=HUBSPOT_TIMEOUT, transport=self._transport) as client:
                if method.upper() == "GET":
                    response = await client.get(url, headers=headers, params=params)
                elif method.upper() == "POST":
                    response = await client.post(url, headers=headers, json=data)
                else:
                    raise FatalError(f"Unsupported method: {method}")
        except httpx.TimeoutException:
            raise TransientError(f"Connection timeout calling {path}")
        except httpx.RequestError as e:
            raise TransientError(f"Connection error calling {path}: {str(e)}")

        error = classify_response(response)
        if error:
            raise error

        if response.status_code == 204:
            return {}
        try:
            return response.json()
        except ValueError:
            raise FatalError(f"Malformed JSON from {path}", status_code=response.status_code)

    def _log_retry(self, retry_state):
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"HubSpot {type(exc).__name__}: {exc}; retry {retry_state.attempt_number}/"
            f"{self.max_retries - 1} in {delay:.1f}s"
        )

    async def _call(self, method: str, path: str, data: dict = None, params: dict = None) -> dict:
        """Make an authenticated API call, retrying rate-limit and transient failures.

        Raises FatalError when the call cannot succeed or the retry budget is spent.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=self._wait,
                retry=retry_if_exception_type((RateLimitedError, TransientError)),
                before_sleep=self._log_retry,
                sleep=self._sleep,
            ):
                with attempt:
                    return await self._request(method, path, data=data, params=params)
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error(f"HubSpot retries exhausted for {method} {path}: {last}")
            raise FatalError(
                f"Retries exhausted after {self.max_retries} attempts: {last}",
                status_code=getattr(last, "status_code", None),
            ) from last

    # ==================== Objects ====================

    async def fetch_page(
        self,
        object_type: str,
        properties: List[str],
        cursor: Optional[str] = None,
        page_size: int = HUBSPOT_MAX_PAGE_SIZE,
        since: Optional[datetime] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        Fetch one page of CRM objects.

        Without `since` this walks the list endpoint (full sync). With `since`
        it uses the search endpoint filtered on last-modified >= since, sorted
        ascending so every page advances the watermark monotonically.

        Returns:
            (items, next_cursor); next_cursor is None on the last page.
        """
        limit = max(1, min(page_size, HUBSPOT_MAX_PAGE_SIZE))

        if since is None:
            params = {
                "limit": limit,
                "archived": "false",
                "properties": ",".join(properties),
            }
            if cursor:
                params["after"] = cursor
            payload = await self._call("GET", f"/crm/v3/objects/{object_type}", params=params)
        else:
            body = {
                "filterGroups": [{
                    "filters": [{
                        "propertyName": LAST_MODIFIED_PROPERTY,
                        "operator": "GTE",
                        "value": str(int(since.timestamp() * 1000)),
                    }]
                }],
                "sorts": [{"propertyName": LAST_MODIFIED_PROPERTY, "direction": "ASCENDING"}],
                "properties": properties,
                "limit": limit,
            }
            if cursor:
                body["after"] = cursor
            payload = await self._call("POST", f"/crm/v3/objects/{object_type}/search", data=body)

        results = payload.get("results")
        if not isinstance(results, list):
            raise FatalError(f"Unexpected {object_type} page shape: missing 'results' list")

        next_cursor = ((payload.get("paging") or {}).get("next") or {}).get("after")
        return results, (str(next_cursor) if next_cursor else None)

    # ==================== Associations ====================

    async def fetch_associations(
        self, object_type: str, source_ids: List[str], target_type: str
    ) -> Dict[str, List[str]]:
        """
        Read associations from `object_type` to `target_type` for the given ids.

        Ids are sent in batches of HUBSPOT_ASSOCIATION_BATCH_SIZE, one batch at a
        time. Ids without links are simply absent from the result. HubSpot answers
        207 Multi-Status when some inputs have no associations; that is a success.
        """
        unique_ids = list(dict.fromkeys(str(i) for i in source_ids if i))
        links: Dict[str, List[str]] = {}

        for i in range(0, len(unique_ids), HUBSPOT_ASSOCIATION_BATCH_SIZE):
            inputs = [{"id": sid} for sid in unique_ids[i:i + HUBSPOT_ASSOCIATION_BATCH_SIZE]]
            seen_pages = set()

            # An object with more links than one association page carries its
            # own paging cursor; those ids are re-requested with "after".
            while inputs:
                payload = await self._call(
                    "POST",
                    f"/crm/v4/associations/{object_type}/{target_type}/batch/read",
                    data={"inputs": inputs},
                )
                inputs = []
                for result in payload.get("results") or []:
                    from_id = (result.get("from") or {}).get("id")
                    if not from_id:
                        continue
                    targets = [
                        str(t["toObjectId"]) for t in result.get("to") or []
                        if t.get("toObjectId") is not None
                    ]
                    if targets:
                        existing = links.setdefault(str(from_id), [])
                        existing.extend(t for t in targets if t not in existing)

                    after = ((result.get("paging") or {}).get("next") or {}).get("after")
                    if after and (str(from_id), str(after)) not in seen_pages:
                        seen_pages.add((str(from_id), str(after)))
                        inputs.append({"id": str(from_id), "after": str(after)})

                if inputs:
                    logger.info(
                        f"Following association paging for {len(inputs)} {object_type} "
                        f"-> {target_type} objects"
                    )

        return links
