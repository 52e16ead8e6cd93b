"""
Reseller authentication: the static hash header used by the catalog API and
the cached OAuth2 bearer token used by the order API.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from keyshop.g2a.errors import G2AError, G2AErrorCode
from keyshop.observability.metrics import increment_counter
from keyshop.services.cache_service import CacheStore, CacheUnavailableError

logger = logging.getLogger(__name__)

TOKEN_CACHE_PREFIX = "g2a:oauth2:token"
TOKEN_REFRESH_MARGIN_SECONDS = 300


class HashAuthenticator:
    """Builds the ``Authorization: <clientId>, <apiKey>`` header."""

    def __init__(self, client_id: str, client_secret: str, email: str) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.email = email

    @staticmethod
    def generate_api_key(client_id: str, email: str, client_secret: str) -> str:
        return hashlib.sha256(f"{client_id}{email}{client_secret}".encode("utf-8")).hexdigest()

    def headers(self) -> Dict[str, str]:
        api_key = self.generate_api_key(self.client_id, self.email, self.client_secret)
        return {"Authorization": f"{self.client_id}, {api_key}"}

    def token_headers(self, env: str, timestamp: Optional[str] = None) -> Dict[str, str]:
        """Headers for the OAuth2 token endpoint; production signs with a timestamp."""
        if env != "live":
            return {"Authorization": f"{self.client_secret}, {self.client_id}"}
        timestamp = timestamp or str(int(time.time()))
        signature = hashlib.sha256(
            f"{self.client_secret}{self.client_id}{timestamp}".encode("utf-8")
        ).hexdigest()
        return {
            "X-API-HASH": self.client_secret,
            "X-API-KEY": self.client_id,
            "X-G2A-Timestamp": timestamp,
            "X-G2A-Hash": signature,
        }


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float

    def needs_refresh(self, now: float, margin: float = TOKEN_REFRESH_MARGIN_SECONDS) -> bool:
        return self.expires_at - now < margin

    def to_json(self) -> str:
        return json.dumps({"token": self.token, "expires_at": self.expires_at})

    @classmethod
    def from_json(cls, raw: str) -> Optional["CachedToken"]:
        try:
            data = json.loads(raw)
            return cls(token=str(data["token"]), expires_at=float(data["expires_at"]))
        except (ValueError, KeyError, TypeError):
            return None


class TokenManager:
    """
    Caches the OAuth2 access token in the shared cache store and in process.

    ``fetch_token`` performs the HTTP call and returns ``(access_token,
    expires_in_seconds)``. Concurrent callers that find the token missing or
    close to expiry share one in-flight fetch: the first caller performs it
    and every other caller waits on the same future, receiving the same
    token or the same error.
    """

    def __init__(
        self,
        fetch_token: Callable[[], Tuple[str, int]],
        cache: Optional[CacheStore] = None,
        env: str = "sandbox",
        refresh_margin: float = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetch_token = fetch_token
        self._cache = cache
        self.env = env
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None
        self._memory: Optional[CachedToken] = None

    @property
    def cache_key(self) -> str:
        return f"{TOKEN_CACHE_PREFIX}:{self.env}"

    def _fresh(self, cached: Optional[CachedToken]) -> bool:
        return cached is not None and not cached.needs_refresh(self._clock(), self.refresh_margin)

    def _read_shared(self) -> Optional[CachedToken]:
        if self._cache is None:
            return None
        try:
            raw = self._cache.get(self.cache_key)
        except CacheUnavailableError as exc:
            logger.warning(f"Token cache read failed, using in-process copy: {exc}")
            increment_counter("cache_errors_total", labels={"operation": "token_read"})
            return None
        return CachedToken.from_json(raw) if raw else None

    def _store(self, token: CachedToken) -> None:
        self._memory = token
        if self._cache is None:
            return
        ttl = int(token.expires_at - self._clock())
        if ttl <= 0:
            return
        try:
            self._cache.set(self.cache_key, token.to_json(), ttl)
        except CacheUnavailableError as exc:
            logger.warning(f"Token cache write failed, kept in process only: {exc}")
            increment_counter("cache_errors_total", labels={"operation": "token_write"})

    def get_token(self) -> str:
        if self._fresh(self._memory):
            return self._memory.token

        shared = self._read_shared()
        if self._fresh(shared):
            self._memory = shared
            return shared.token

        with self._lock:
            if self._fresh(self._memory):
                return self._memory.token
            future = self._inflight
            leader = future is None
            if leader:
                future = Future()
                self._inflight = future

        if not leader:
            return future.result()

        try:
            token = self._refresh()
        except G2AError as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(token.token)
            return token.token
        finally:
            with self._lock:
                self._inflight = None

    def _refresh(self) -> CachedToken:
        logger.info("Fetching new OAuth2 token from G2A API")
        try:
            access_token, expires_in = self._fetch_token()
        except G2AError as exc:
            logger.error(f"Failed to fetch OAuth2 token: {exc}")
            raise G2AError(
                G2AErrorCode.AUTH_FAILED,
                "Failed to obtain OAuth2 token for the order API",
                status=exc.status,
                operation="get_oauth_token",
                upstream_code=exc.upstream_code,
            ) from exc
        except Exception as exc:
            logger.error(f"Unexpected error fetching OAuth2 token: {exc}")
            raise G2AError(
                G2AErrorCode.AUTH_FAILED,
                f"Failed to obtain OAuth2 token for the order API: {exc}",
                operation="get_oauth_token",
            ) from exc

        token = CachedToken(token=access_token, expires_at=self._clock() + int(expires_in))
        self._store(token)
        logger.info(f"OAuth2 token obtained, expires in {expires_in}s")
        return token

    def invalidate(self) -> None:
        self._memory = None
        if self._cache is None:
            return
        try:
            self._cache.delete(self.cache_key)
        except CacheUnavailableError as exc:
            logger.warning(f"Token cache invalidation failed: {exc}")
            increment_counter("cache_errors_total", labels={"operation": "token_delete"})


def parse_token_response(payload: Any) -> Tuple[str, int]:
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise G2AError(
            G2AErrorCode.INVALID_RESPONSE,
            "Token response did not contain an access_token",
            operation="get_oauth_token",
        )
    try:
        expires_in = int(payload.get("expires_in") or 3600)
    except (TypeError, ValueError):
        expires_in = 3600
    return str(payload["access_token"]), expires_in
