# app/services/zoom_gateway.py
from __future__ import annotations

import asyncio
import heapq
from collections import deque
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx

from app.core.clock import Clock, system_clock
from app.core.config import get_settings
from app.services.cache import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS: Dict[str, float] = {
    "meeting": 1.0,
    "report": 2.0,
    "user": 1.0,
    "default": 0.5,
}

DEFAULT_PRIORITY = 5

# Most recent dispatches kept in GatewayStats.dispatch_log
DISPATCH_LOG_SIZE = 1000

# 429 ladder: 1s, 2s, 4s ... capped at 30s (unless the server sends Retry-After)
RATE_LIMIT_BASE_DELAY = 1.0
RATE_LIMIT_MAX_DELAY = 30.0
# Network ladder: 0.5s, 1s, 2s ... capped at 5s
NETWORK_BASE_DELAY = 0.5
NETWORK_MAX_DELAY = 5.0

NETWORK_ERRORS: Tuple[type, ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class ZoomGatewayError(RuntimeError):
    """
    Raised when a call through the gateway fails in a way the caller has to
    handle. `status_code` is set when the failure came with an HTTP status.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayConfigurationError(ZoomGatewayError):
    """Credentials are missing, so no token can be requested."""


class RateLimitExceeded(ZoomGatewayError):
    """The API kept answering 429 after the retry budget was spent."""


class UpstreamUnavailable(ZoomGatewayError):
    """Timeouts, connection failures or 5xx answers after the retry budget was spent."""


class UpstreamNotFound(ZoomGatewayError):
    """The API answered 404. Never retried."""


@dataclass
class _TokenState:
    access_token: str
    issued_at: datetime
    expires_at: datetime
    # monotonic deadline after which the token is refreshed proactively
    refresh_after: float


@dataclass(frozen=True)
class GatewayRequest:
    """
    Description of a single API call.

    `path` is either an absolute URL or a path relative to the API base URL.
    """

    path: str
    method: str = "GET"
    params: Optional[Mapping[str, Any]] = None
    json: Any = None


@dataclass
class GatewayStats:
    calls: int = 0
    cache_hits: int = 0
    rate_limited: int = 0
    retries: int = 0
    errors: int = 0
    token_refreshes: int = 0
    dispatch_log: Deque[Tuple[str, str, float]] = field(
        default_factory=lambda: deque(maxlen=DISPATCH_LOG_SIZE), repr=False
    )


class _CategoryLane:
    """
    Paces dispatches of one category.

    Each dispatch waits until `last_dispatch + interval`. While one caller is
    waiting for its slot the others queue up and are released lowest
    priority number first, FIFO within equal priorities.
    """

    def __init__(self, name: str, interval: float, clock: Clock) -> None:
        self.name = name
        self.interval = interval
        self.clock = clock
        self._last_dispatch: Optional[float] = None
        self._busy = False
        self._waiters: List[Tuple[int, int, asyncio.Future]] = []
        self._seq = itertools.count()

    @property
    def pending(self) -> int:
        return sum(1 for _, _, fut in self._waiters if not fut.done())

    async def wait_turn(self, priority: int) -> float:
        if self._busy or self._waiters:
            fut = asyncio.get_running_loop().create_future()
            heapq.heappush(self._waiters, (priority, next(self._seq), fut))
            try:
                await fut
            except asyncio.CancelledError:
                if fut.done() and not fut.cancelled():
                    # We were handed the lane but got cancelled; pass it on.
                    self._release()
                raise
        else:
            self._busy = True

        try:
            if self._last_dispatch is not None:
                delay = self._last_dispatch + self.interval - self.clock.monotonic()
                if delay > 0:
                    logger.debug("Rate limit wait for %s: %.3fs", self.name, delay)
                    await self.clock.sleep(delay)
            self._last_dispatch = self.clock.monotonic()
            return self._last_dispatch
        finally:
            self._release()

    def _release(self) -> None:
        while self._waiters:
            _, _, fut = heapq.heappop(self._waiters)
            if not fut.done():
                fut.set_result(None)
                return
        self._busy = False


class ZoomGateway:
    """
    Rate-limited client for the Zoom REST API (Server-to-Server OAuth).

    Responsibilities
    ----------------
    - Fetch and cache an access token; refresh it `token_expiry_margin`
      seconds before expiry, never more often than once per
      `token_min_refresh_interval`, and collapse concurrent refreshes into a
      single upstream request.
    - Pace every call per category (`meeting`, `report`, `user`, `default`)
      with a strictly increasing not-before timestamp; queued callers of a
      category are released by priority.
    - Retry 429 answers (Retry-After or exponential backoff) and
      network-class failures (timeouts, connection errors, 5xx) on separate
      ladders, up to `max_retries` each. A 401 drops the cached token and is
      retried once with a fresh one. Other 4xx answers are not retried.
    - Serve GET results from a short-TTL response cache when the caller
      supplies a cache key; cache hits skip pacing entirely.

    Notes
    -----
    - State is in-memory for this process only.
    - A new `httpx.AsyncClient` is opened per request; `transport` lets tests
      plug in `httpx.MockTransport`.
    """

    def __init__(
        self,
        account_id: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        base_url: str = "https://api.zoom.us/v2",
        oauth_url: str = "https://zoom.us/oauth/token",
        intervals: Optional[Mapping[str, float]] = None,
        timeout_seconds: float = 15.0,
        max_retries: int = 3,
        response_cache: Optional[TTLCache] = None,
        response_cache_ttl: float = 300.0,
        token_min_refresh_interval: float = 60.0,
        token_expiry_margin: float = 300.0,
        clock: Clock = system_clock,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._account_id = account_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._oauth_url = oauth_url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

        self.clock = clock
        self.max_retries = max_retries
        self.response_cache_ttl = response_cache_ttl
        self.response_cache = response_cache or TTLCache(default_ttl=response_cache_ttl, clock=clock)
        self.token_min_refresh_interval = token_min_refresh_interval
        self.token_expiry_margin = token_expiry_margin
        self.stats = GatewayStats()

        merged = dict(DEFAULT_INTERVALS)
        merged.update(intervals or {})
        self._lanes: Dict[str, _CategoryLane] = {
            name: _CategoryLane(name, float(interval), clock) for name, interval in merged.items()
        }

        self._token_state: Optional[_TokenState] = None
        self._token_lock = asyncio.Lock()
        self._last_token_request: Optional[float] = None

    @property
    def is_configured(self) -> bool:
        return bool(self._account_id and self._client_id and self._client_secret)

    def lane(self, category: str) -> _CategoryLane:
        return self._lanes.get(category) or self._lanes["default"]

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    async def _fetch_token(self) -> _TokenState:
        """
        Request a fresh access token using the account-credentials grant.
        """
        if not self.is_configured:
            raise GatewayConfigurationError(
                "ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID and ZOOM_CLIENT_SECRET must be configured"
            )

        params = {"grant_type": "account_credentials", "account_id": self._account_id}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                resp = await client.post(
                    self._oauth_url,
                    params=params,
                    auth=(self._client_id, self._client_secret),
                )
        except NETWORK_ERRORS as exc:
            raise UpstreamUnavailable(f"Token request failed: {exc!r}") from exc

        if resp.status_code != 200:
            raise ZoomGatewayError(
                f"Failed to obtain Zoom token (status={resp.status_code}): {resp.text}",
                status_code=resp.status_code,
            )

        payload = resp.json()
        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")

        if not access_token or not isinstance(expires_in, (int, float)):
            raise ZoomGatewayError(
                "Invalid token response from Zoom (missing access_token/expires_in)"
            )

        issued_at = self.clock.now()
        refresh_in = max(float(expires_in) - self.token_expiry_margin, 0.0)
        return _TokenState(
            access_token=access_token,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=float(expires_in)),
            refresh_after=self.clock.monotonic() + refresh_in,
        )

    def _cached_token(self) -> Optional[str]:
        state = self._token_state
        if state is not None and self.clock.monotonic() < state.refresh_after:
            return state.access_token
        return None

    async def get_access_token(self) -> str:
        """
        Return a valid access token, using the cached value while it is fresh.

        Only one refresh runs at a time; callers arriving during a refresh
        wait for it and reuse its token.
        """
        token = self._cached_token()
        if token is not None:
            return token

        async with self._token_lock:
            token = self._cached_token()
            if token is not None:
                return token

            if self._last_token_request is not None:
                wait = self._last_token_request + self.token_min_refresh_interval - self.clock.monotonic()
                if wait > 0:
                    logger.info("Token refresh throttled, waiting %.1fs", wait)
                    await self.clock.sleep(wait)

            self._last_token_request = self.clock.monotonic()
            self._token_state = await self._fetch_token()
            self.stats.token_refreshes += 1
            logger.info("Obtained new Zoom access token (expires %s)", self._token_state.expires_at.isoformat())
            return self._token_state.access_token

    def invalidate_token(self) -> None:
        self._token_state = None

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call(
        self,
        request: GatewayRequest,
        category: str = "default",
        *,
        priority: int = DEFAULT_PRIORITY,
        cache_key: Optional[str] = None,
        cache_ttl: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Dispatch `request` through the category lane and return the JSON body.

        Raises
        ------
        RateLimitExceeded, UpstreamUnavailable, UpstreamNotFound,
        GatewayConfigurationError, ZoomGatewayError
        """
        if category not in self._lanes:
            category = "default"
        retries = self.max_retries if max_retries is None else max_retries

        async def _load() -> Dict[str, Any]:
            return await self._dispatch(request, category, priority, retries)

        if cache_key is None:
            return await _load()

        cached = self.response_cache.get(cache_key)
        if cached is not None:
            self.stats.cache_hits += 1
            logger.debug("Cache hit for %s", cache_key)
            return cached

        ttl = self.response_cache_ttl if cache_ttl is None else cache_ttl
        return await self.response_cache.get_or_load(cache_key, _load, ttl)

    async def get_json(
        self,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        category: str = "default",
        priority: int = DEFAULT_PRIORITY,
        cache_key: Optional[str] = None,
        cache_ttl: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Convenience wrapper for GET calls.
        """
        return await self.call(
            GatewayRequest(path=path, method="GET", params=params),
            category,
            priority=priority,
            cache_key=cache_key,
            cache_ttl=cache_ttl,
        )

    async def _dispatch(
        self,
        request: GatewayRequest,
        category: str,
        priority: int,
        max_retries: int,
    ) -> Dict[str, Any]:
        rate_limit_retries = 0
        network_retries = 0
        auth_retried = False
        lane = self.lane(category)

        while True:
            token = await self.get_access_token()
            dispatched_at = await lane.wait_turn(priority)
            self.stats.dispatch_log.append((category, request.path, dispatched_at))

            try:
                resp = await self._send(request, token)
            except NETWORK_ERRORS as exc:
                if network_retries >= max_retries:
                    self.stats.errors += 1
                    raise UpstreamUnavailable(
                        f"{request.method} {request.path} failed after {network_retries + 1} attempts: {exc!r}"
                    ) from exc
                delay = min(NETWORK_BASE_DELAY * (2 ** network_retries), NETWORK_MAX_DELAY)
                network_retries += 1
                self.stats.retries += 1
                logger.warning(
                    "Network error on %s %s (%r), retry %d/%d in %.2fs",
                    request.method, request.path, exc, network_retries, max_retries, delay,
                )
                await self.clock.sleep(delay)
                continue

            status = resp.status_code

            if status == 401 and not auth_retried:
                # Token revoked or rotated before its expiry; fetch a new one once.
                auth_retried = True
                self.stats.retries += 1
                logger.warning(
                    "Unauthorized on %s %s, refreshing access token and retrying",
                    request.method, request.path,
                )
                self.invalidate_token()
                continue

            if status == 429:
                self.stats.rate_limited += 1
                if rate_limit_retries >= max_retries:
                    self.stats.errors += 1
                    raise RateLimitExceeded(
                        f"{request.method} {request.path} still rate limited after "
                        f"{rate_limit_retries + 1} attempts",
                        status_code=status,
                    )
                delay = _retry_after_seconds(resp)
                if delay is None:
                    delay = min(RATE_LIMIT_BASE_DELAY * (2 ** rate_limit_retries), RATE_LIMIT_MAX_DELAY)
                rate_limit_retries += 1
                self.stats.retries += 1
                logger.warning(
                    "Rate limited on %s %s, retry %d/%d in %.2fs",
                    request.method, request.path, rate_limit_retries, max_retries, delay,
                )
                await self.clock.sleep(delay)
                continue

            if status >= 500:
                if network_retries >= max_retries:
                    self.stats.errors += 1
                    raise UpstreamUnavailable(
                        f"{request.method} {request.path} failed (status={status}): {resp.text}",
                        status_code=status,
                    )
                delay = min(NETWORK_BASE_DELAY * (2 ** network_retries), NETWORK_MAX_DELAY)
                network_retries += 1
                self.stats.retries += 1
                logger.warning(
                    "Server error %d on %s %s, retry %d/%d in %.2fs",
                    status, request.method, request.path, network_retries, max_retries, delay,
                )
                await self.clock.sleep(delay)
                continue

            if status == 404:
                self.stats.errors += 1
                raise UpstreamNotFound(
                    f"{request.method} {request.path} not found: {resp.text}",
                    status_code=status,
                )

            if status // 100 != 2:
                self.stats.errors += 1
                raise ZoomGatewayError(
                    f"{request.method} {request.path} failed (status={status}): {resp.text}",
                    status_code=status,
                )

            self.stats.calls += 1
            if not resp.content:
                return {}
            return resp.json()

    async def _send(self, request: GatewayRequest, token: str) -> httpx.Response:
        """
        Issue one authenticated HTTP request. Does not raise on HTTP errors.
        """
        if request.path.startswith("http://") or request.path.startswith("https://"):
            url = request.path
        else:
            url = f"{self._base_url}/{request.path.lstrip('/')}"

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

        async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
            return await client.request(
                method=request.method.upper(),
                url=url,
                headers=headers,
                params=dict(request.params) if request.params else None,
                json=request.json,
            )


def _retry_after_seconds(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def encode_meeting_uuid(uuid: str) -> str:
    """
    Encode a meeting UUID for use as a URL path segment.

    UUIDs that contain `/` must be double URL-encoded, otherwise the API
    treats them as path separators.
    """
    if not uuid:
        return uuid
    encoded = quote(uuid, safe="")
    if "/" in uuid:
        return quote(encoded, safe="")
    return encoded


# Simple singleton-style accessor wired to app settings
_gateway_instance: Optional[ZoomGateway] = None


def get_zoom_gateway() -> ZoomGateway:
    """
    Lazily construct the process-wide ZoomGateway from application settings.

    Missing credentials do not fail here; the first call raises
    GatewayConfigurationError instead.
    """
    global _gateway_instance
    if _gateway_instance is None:
        settings = get_settings()
        _gateway_instance = ZoomGateway(
            account_id=settings.ZOOM_ACCOUNT_ID,
            client_id=settings.ZOOM_CLIENT_ID,
            client_secret=settings.ZOOM_CLIENT_SECRET,
            base_url=settings.ZOOM_API_BASE_URL,
            oauth_url=settings.ZOOM_OAUTH_URL,
            intervals=settings.gateway_intervals,
            timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
            max_retries=settings.GATEWAY_MAX_RETRIES,
            response_cache_ttl=settings.GATEWAY_RESPONSE_CACHE_TTL_SECONDS,
            token_min_refresh_interval=settings.TOKEN_MIN_REFRESH_INTERVAL_SECONDS,
            token_expiry_margin=settings.TOKEN_EXPIRY_MARGIN_SECONDS,
        )
    return _gateway_instance
