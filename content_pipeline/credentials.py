"""
Credential lookup for outbound publish calls.

OAuth tokens are acquired and refreshed elsewhere; this module only reads
them.  ``StoreCredentialProvider`` fetches the ``oauth_tokens`` row for a
(user, platform) pair, decrypts the token through a pluggable hook and
caches the result in an expire-after-write ``TTLCache``, so repeated
publishes in a burst don't hit the database each time.
"""

import logging
from datetime import datetime
from typing import Callable, Protocol, runtime_checkable

from content_pipeline.exceptions import NotFoundError
from content_pipeline.models import Credential
from content_pipeline.utils import TTLCache, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialProvider(Protocol):
    async def get_valid_credential(self, user_id: str, platform: str) -> Credential:
        """Return a usable credential or raise ``NotFoundError``."""
        ...


def _identity(token: str) -> str:
    return token


class StoreCredentialProvider:
    """Reads OAuth tokens through a ``PipelineStore``.

    Args:
        store: Store exposing ``get_oauth_token(user_id, platform)``.
        cache_seconds: How long a looked-up credential is reused.
        decrypt: Turns the stored (encrypted) token into the bearer token.
        clock: Returns the current UTC time, for expiry checks.
    """

    def __init__(
        self,
        store,
        cache_seconds: float = 300,
        decrypt: Callable[[str], str] = _identity,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self._decrypt = decrypt
        self._clock = clock
        self._cache: TTLCache[Credential] = TTLCache(cache_seconds)

    async def get_valid_credential(self, user_id: str, platform: str) -> Credential:
        """
        Raises:
            NotFoundError: No token is stored, or the stored token expired.
        """
        now = self._clock()
        key = (user_id, platform)

        cached = self._cache.get(key)
        if cached is not None and not cached.is_expired(now):
            return cached

        row = await self.store.get_oauth_token(user_id, platform)
        if row is None:
            raise NotFoundError(f"No {platform} credential for user {user_id}")

        credential = Credential(
            user_id=user_id,
            platform=platform,
            access_token=self._decrypt(row["access_token"]),
            expires_at=parse_timestamp(row.get("expires_at")),
        )
        if credential.is_expired(now):
            self._cache.pop(key)
            raise NotFoundError(
                f"{platform} credential for user {user_id} expired at "
                f"{credential.expires_at.isoformat()}"  # type: ignore[union-attr]
            )

        self._cache.set(key, credential)
        logger.debug("Loaded %s credential for user %s", platform, user_id)
        return credential

    def invalidate(self, user_id: str, platform: str) -> None:
        """Forget a cached credential (e.g. after the platform rejected it)."""
        self._cache.pop((user_id, platform))


__all__ = ["CredentialProvider", "StoreCredentialProvider"]
