"""
Process-wide cache for the gateway's OAuth bearer token.

The token is reused until shortly before the gateway says it expires.
Refreshes are single-flight: while one caller performs the credential
exchange, every other caller waits on the same future instead of
starting its own exchange.
"""

import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Optional

from cachetools import TLRUCache

from pharmacy_checkout.domain.errors import GatewayTimeoutError
from shared.core import get_logger

logger = get_logger(__name__, component="token-cache")

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
_CACHE_KEY = "access_token"

@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_in: int = DEFAULT_TOKEN_LIFETIME_SECONDS

class AccessTokenCache:
    def __init__(
        self,
        fetch: Callable[[], AccessToken],
        safety_margin: float = 300,
        clock: Callable[[], float] = time.monotonic,
        wait_timeout: float = 30.0,
    ):
        self._fetch = fetch
        self._safety_margin = safety_margin
        self._wait_timeout = wait_timeout
        self._cache = TLRUCache(maxsize=1, ttu=self._time_to_use, timer=clock)
        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None
        self.exchanges = 0

    def _time_to_use(self, _key, token: AccessToken, now: float) -> float:
        return now + token.expires_in - self._safety_margin

    def get_token(self) -> str:
        with self._lock:
            cached = self._cache.get(_CACHE_KEY)
            if cached is not None:
                return cached.value
            future = self._inflight
            leader = future is None
            if leader:
                future = self._inflight = Future()

        if not leader:
            try:
                return future.result(timeout=self._wait_timeout).value
            except FutureTimeout:
                raise GatewayTimeoutError("Timed out waiting for gateway access token")

        try:
            self.exchanges += 1
            token = self._fetch()
        except BaseException as exc:
            with self._lock:
                self._inflight = None
            future.set_exception(exc)
            raise

        with self._lock:
            self._cache[_CACHE_KEY] = token
            self._inflight = None
        future.set_result(token)
        logger.info("Gateway access token refreshed", extra={'extra_fields': {'expires_in': token.expires_in}})
        return token.value

    def invalidate(self) -> None:
        with self._lock:
            self._cache.pop(_CACHE_KEY, None)

_token_cache: Optional[AccessTokenCache] = None
_token_cache_lock = threading.Lock()

def init_token_cache(fetch: Callable[[], AccessToken], **kwargs) -> AccessTokenCache:
    """Install the process-wide cache; replaces any existing one"""
    global _token_cache
    with _token_cache_lock:
        _token_cache = AccessTokenCache(fetch, **kwargs)
        return _token_cache

def get_token_cache() -> AccessTokenCache:
    if _token_cache is None:
        raise RuntimeError("Token cache not initialized; call init_token_cache() first")
    return _token_cache

def reset_token_cache() -> None:
    global _token_cache
    with _token_cache_lock:
        _token_cache = None
