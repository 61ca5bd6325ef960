"""Issuer signing-key cache for federated identity tokens.

Keys are discovered through the issuer's OpenID configuration document
(``{issuer}/.well-known/openid-configuration``), whose ``jwks_uri`` points at
the JSON Web Key Set. Each issuer's key set is cached and refreshed when:

- the issuer has never been fetched,
- a requested key ID is not in the cached set (key rotation),
- the cached set is older than the TTL.

Refreshes of one issuer are serialized by a per-issuer lock and spaced by a
minimum interval, so a burst of tokens with unknown key IDs triggers at most
one fetch per interval. The cache is published as an immutable mapping that
is replaced wholesale on every update.

Example:
    >>> cache = JwksCache(ttl=3600)
    >>> await cache.start()
    >>> key = await cache.get_key("https://token.actions.githubusercontent.com", kid)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

import httpx
import jwt

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"


@dataclass(frozen=True)
class SigningKey:
    """One published signing key.

    Attributes:
        key_id: The JWK ``kid``.
        algorithm: The JWK ``alg`` if the issuer declared one, else None.
        jwk: The parsed key.
    """

    key_id: str
    algorithm: str | None
    jwk: jwt.PyJWK


@dataclass(frozen=True)
class IssuerKeys:
    """Cached key set of one issuer.

    Attributes:
        keys: Key ID to key.
        fetched_at: Clock time of the successful fetch.
    """

    keys: Mapping[str, SigningKey]
    fetched_at: float


class JwksCache:
    """TTL cache of issuer signing keys.

    Args:
        ttl: Seconds after which a key set is considered stale.
        min_refresh_interval: Minimum seconds between fetch attempts per issuer.
        timeout: HTTP request timeout in seconds.
        client: Optional httpx client (for testing). Not closed by this cache.
        clock: Monotonic clock (for testing).
    """

    def __init__(
        self,
        *,
        ttl: float = 3600.0,
        min_refresh_interval: float = 30.0,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if min_refresh_interval < 0:
            raise ValueError("min_refresh_interval must be non-negative")
        self._ttl = ttl
        self._min_refresh_interval = min_refresh_interval
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._snapshot: Mapping[str, IssuerKeys] = MappingProxyType({})
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_attempt: dict[str, float] = {}
        self._issuers: set[str] = set()
        self._task: asyncio.Task[None] | None = None

    @property
    def snapshot(self) -> Mapping[str, IssuerKeys]:
        """Current immutable issuer-to-keys mapping."""
        return self._snapshot

    def register(self, issuers: Iterable[str]) -> None:
        """Add issuers to the background refresh set."""
        self._issuers.update(issuers)

    async def get_key(self, issuer: str, key_id: str) -> SigningKey | None:
        """Return the signing key ``key_id`` of ``issuer``.

        Performs network I/O only when the key is missing or the issuer's set
        is stale. If a refresh fails, a previously cached key is still returned.

        Args:
            issuer: Issuer URL.
            key_id: The ``kid`` from the token header.

        Returns:
            The key, or None if the issuer does not publish it.
        """
        self._issuers.add(issuer)
        entry = self._snapshot.get(issuer)
        if entry is not None and key_id in entry.keys and not self._is_stale(entry):
            return entry.keys[key_id]

        await self.refresh(issuer)
        entry = self._snapshot.get(issuer)
        if entry is None:
            return None
        return entry.keys.get(key_id)

    async def refresh(self, issuer: str) -> bool:
        """Refresh one issuer's key set, subject to the minimum interval.

        Concurrent callers for the same issuer coalesce: the first one fetches,
        the rest find the attempt already made and return.

        Args:
            issuer: Issuer URL.

        Returns:
            True if a new key set was installed.
        """
        lock = self._locks.setdefault(issuer, asyncio.Lock())
        async with lock:
            last = self._last_attempt.get(issuer)
            if last is not None and self._clock() - last < self._min_refresh_interval:
                return False
            self._last_attempt[issuer] = self._clock()

            try:
                keys = await self._fetch(issuer)
            except (httpx.HTTPError, ValueError, jwt.PyJWTError) as exc:
                logger.warning("Key refresh for issuer %s failed: %s", issuer, exc)
                return False

            snapshot = dict(self._snapshot)
            snapshot[issuer] = IssuerKeys(keys=MappingProxyType(keys), fetched_at=self._clock())
            self._snapshot = MappingProxyType(snapshot)
            logger.info("Loaded %d signing keys for issuer %s", len(keys), issuer)
            return True

    async def start(self) -> None:
        """Start the background refresh task."""
        if self._task is None:
            self._task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """Stop the background task and close the owned HTTP client."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _is_stale(self, entry: IssuerKeys) -> bool:
        return self._clock() - entry.fetched_at >= self._ttl

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def _fetch(self, issuer: str) -> dict[str, SigningKey]:
        client = self._get_client()

        response = await client.get(issuer.rstrip("/") + DISCOVERY_PATH)
        response.raise_for_status()
        discovery: Any = response.json()
        jwks_uri = discovery.get("jwks_uri") if isinstance(discovery, dict) else None
        if not isinstance(jwks_uri, str) or not jwks_uri:
            raise ValueError("discovery document has no jwks_uri")

        response = await client.get(jwks_uri)
        response.raise_for_status()
        document: Any = response.json()
        raw_keys = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(raw_keys, list):
            raise ValueError("key set document has no keys")

        keys: dict[str, SigningKey] = {}
        for raw in raw_keys:
            if not isinstance(raw, dict) or not isinstance(raw.get("kid"), str):
                continue
            try:
                jwk = jwt.PyJWK(raw)
            except jwt.PyJWTError as exc:
                logger.debug("Skipping unusable key %s from %s: %s", raw["kid"], issuer, exc)
                continue
            alg = raw.get("alg")
            keys[raw["kid"]] = SigningKey(
                key_id=raw["kid"], algorithm=alg if isinstance(alg, str) else None, jwk=jwk
            )
        return keys

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._ttl)
            for issuer in sorted(self._issuers):
                await self.refresh(issuer)
