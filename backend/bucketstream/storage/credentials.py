"""
Bearer credential acquisition and request authorization.

The gate owns the only copy of each credential. Consumers hand it a
RequestDescriptor and get back a new one carrying the Authorization header;
they never see the token itself.
"""
import asyncio
import logging
import time
from typing import Dict, FrozenSet, Iterable, Optional, Protocol

import httpx

from bucketstream.storage.errors import AuthFailure
from bucketstream.storage.models import Credential, RequestDescriptor

logger = logging.getLogger(__name__)

# Refresh this many seconds before the provider-reported expiry
EXPIRY_SKEW_SECONDS = 60.0

METADATA_TOKEN_URL = (
    "http://metadata.google.internal/computeMetadata/v1/instance/service-accounts/default/token"
)


class TokenSource(Protocol):
    """External collaborator that mints credentials for a scope set."""

    async def fetch(self, scopes: FrozenSet[str]) -> Credential:
        ...


class StaticTokenSource:
    """Serves a pre-issued token that never expires (tests, proxies, emulators)."""

    def __init__(self, token: str):
        if not token:
            raise ValueError("A static token source needs a non-empty token")
        self._token = token

    async def fetch(self, scopes: FrozenSet[str]) -> Credential:
        return Credential(token=self._token)


class MetadataServerTokenSource:
    """
    Fetches access tokens from the GCE/GKE metadata server.

    Works on any Google-hosted runtime with an attached service account.
    """

    def __init__(self, http_client: httpx.AsyncClient, token_url: str = METADATA_TOKEN_URL):
        self._http_client = http_client
        self._token_url = token_url

    async def fetch(self, scopes: FrozenSet[str]) -> Credential:
        params = {"scopes": ",".join(sorted(scopes))} if scopes else None
        response = await self._http_client.get(
            self._token_url,
            params=params,
            headers={"Metadata-Flavor": "Google"},
        )
        response.raise_for_status()
        payload = response.json()

        expires_in = payload.get("expires_in")
        expires_at = time.time() + float(expires_in) if expires_in is not None else None
        return Credential(token=payload["access_token"], expires_at=expires_at)


class CredentialGate:
    """
    Decorates request descriptors with a cached bearer credential.

    Credentials are cached per scope set and refreshed transparently when
    they are about to expire. Concurrent authorize() calls that need a
    refresh share one fetch.
    """

    def __init__(
        self,
        token_source: TokenSource,
        scopes: Iterable[str],
        user_agent: Optional[str] = None,
        expiry_skew: float = EXPIRY_SKEW_SECONDS,
    ):
        self._token_source = token_source
        self._scopes = frozenset(scopes)
        self._user_agent = user_agent
        self._expiry_skew = expiry_skew
        self._cache: Dict[FrozenSet[str], Credential] = {}
        self._locks: Dict[FrozenSet[str], asyncio.Lock] = {}

    @property
    def scopes(self) -> FrozenSet[str]:
        return self._scopes

    async def authorize(
        self,
        descriptor: RequestDescriptor,
        scopes: Optional[Iterable[str]] = None
    ) -> RequestDescriptor:
        """
        Return a copy of `descriptor` carrying Authorization and User-Agent.

        Args:
            descriptor: Request to authorize (left untouched)
            scopes: Scope set override (defaults to the gate's scopes)

        Returns:
            New authorized RequestDescriptor

        Raises:
            AuthFailure: If the token source fails. Not retried here.
        """
        credential = await self._credential(frozenset(scopes) if scopes is not None else self._scopes)

        headers = {"Authorization": f"Bearer {credential.token}"}
        if self._user_agent:
            headers["User-Agent"] = self._user_agent
        return descriptor.with_headers(headers)

    async def _credential(self, scopes: FrozenSet[str]) -> Credential:
        cached = self._cache.get(scopes)
        if cached is not None and not cached.expired(self._expiry_skew):
            return cached

        lock = self._locks.setdefault(scopes, asyncio.Lock())
        async with lock:
            # Another waiter may have refreshed while we queued on the lock
            cached = self._cache.get(scopes)
            if cached is not None and not cached.expired(self._expiry_skew):
                return cached

            try:
                credential = await self._token_source.fetch(scopes)
            except Exception as e:
                logger.error(f"Credential fetch failed: {e}")
                raise AuthFailure(e) from e

            self._cache[scopes] = credential
            logger.debug("Obtained new credential", extra={"event": "credential_refreshed"})
            return credential

    def invalidate(self) -> None:
        """Drop every cached credential (next authorize() refetches)."""
        self._cache.clear()
