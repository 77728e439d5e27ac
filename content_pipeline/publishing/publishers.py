"""
Async social platform publishers.

Uses ``httpx`` to call the platform APIs.  Each publisher turns a
non-2xx response into the matching ``ExternalApiError`` subclass so the
dispatcher can classify the failure without knowing the platform.

Fail-fast philosophy: publishing itself is never retried here (retries are
the engine's job, with backoff tiers and a persisted attempt count);
connection checks retry transport errors with exponential backoff.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from content_pipeline.exceptions import (
    RateLimitedError,
    TerminalApiError,
    TransientApiError,
    UnauthorizedError,
)
from content_pipeline.models import Credential, ErrorKind
from content_pipeline.publishing.classification import classify_status
from content_pipeline.utils import utc_now, with_retry

logger = logging.getLogger(__name__)

_ERROR_TYPES = {
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.UNAUTHORIZED: UnauthorizedError,
    ErrorKind.TRANSIENT: TransientApiError,
    ErrorKind.TERMINAL: TerminalApiError,
}


@dataclass(frozen=True)
class PublishReceipt:
    """What a platform returned for a successful publish."""

    external_id: str
    url: Optional[str] = None
    published_at: datetime = field(default_factory=utc_now)


@runtime_checkable
class SocialPublisher(Protocol):
    platform: str

    async def publish(self, content: str, credential: Credential) -> PublishReceipt: ...

    async def test_connection(self, credential: Credential) -> bool: ...


class HttpPublisher:
    """Shared plumbing for httpx-based publishers.

    Args:
        base_url: API root (overridable for sandboxes).
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    platform: str = ""
    BASE_URL: str = ""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json",
        }

    def _raise_for_response(self, response: httpx.Response) -> None:
        """Raise the ``ExternalApiError`` subclass matching a failed response."""
        if response.is_success:
            return
        kind = classify_status(response.status_code)
        detail = response.text[:200] if response.content else response.reason_phrase
        raise _ERROR_TYPES[kind](
            f"{self.platform} API returned {response.status_code}: {detail}",
            platform=self.platform,
            status_code=response.status_code,
        )

    async def ping(self) -> bool:
        """True if the API host answers at all (any status code)."""
        try:
            async with self._client() as client:
                await client.head("/")
        except httpx.TransportError as exc:
            logger.warning("[DISPATCH] %s API unreachable: %s", self.platform, exc)
            return False
        return True

    async def _get_json(self, path: str, credential: Credential) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.get(path, headers=self._auth_headers(credential))
        self._raise_for_response(response)
        return response.json()


# ======================================================================
# LINKEDIN
# ======================================================================


class LinkedInPublisher(HttpPublisher):
    """Publishes text posts through the LinkedIn Posts API.

    Usage::

        publisher = LinkedInPublisher()
        receipt = await publisher.publish("Hello LinkedIn", credential)
    """

    platform = "linkedin"
    BASE_URL = "https://api.linkedin.com"
    API_VERSION = "202401"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        headers = super()._auth_headers(credential)
        headers["LinkedIn-Version"] = self.API_VERSION
        headers["X-Restli-Protocol-Version"] = "2.0.0"
        return headers

    async def _author_urn(self, credential: Credential) -> str:
        profile = await self._get_json("/v2/userinfo", credential)
        member_id = profile.get("sub")
        if not member_id:
            raise UnauthorizedError(
                "LinkedIn userinfo did not return a member id",
                platform=self.platform,
            )
        return f"urn:li:person:{member_id}"

    async def publish(self, content: str, credential: Credential) -> PublishReceipt:
        """Create a public text post.

        Raises:
            ExternalApiError: Subclass matching the failed response.
        """
        author = await self._author_urn(credential)
        payload = {
            "author": author,
            "commentary": content,
            "visibility": "PUBLIC",
            "distribution": {
                "feedDistribution": "MAIN_FEED",
                "targetEntities": [],
                "thirdPartyDistributionChannels": [],
            },
            "lifecycleState": "PUBLISHED",
            "isReshareDisabledByAuthor": False,
        }
        async with self._client() as client:
            response = await client.post(
                "/rest/posts", headers=self._auth_headers(credential), json=payload
            )
        self._raise_for_response(response)

        post_urn = response.headers.get("x-restli-id", "")
        if not post_urn:
            raise TransientApiError(
                "LinkedIn accepted the post but returned no id",
                platform=self.platform,
                status_code=response.status_code,
            )
        logger.info("[DISPATCH] LinkedIn post created: %s", post_urn)
        return PublishReceipt(
            external_id=post_urn,
            url=f"https://www.linkedin.com/feed/update/{post_urn}",
        )

    @with_retry(max_attempts=3, retryable_exceptions=(httpx.TransportError,))
    async def test_connection(self, credential: Credential) -> bool:
        await self._get_json("/v2/userinfo", credential)
        return True


# ======================================================================
# X / TWITTER
# ======================================================================


class XPublisher(HttpPublisher):
    """Publishes tweets through the X API v2.

    Usage::

        publisher = XPublisher()
        receipt = await publisher.publish("Hello X", credential)
    """

    platform = "x"
    BASE_URL = "https://api.twitter.com"

    async def publish(self, content: str, credential: Credential) -> PublishReceipt:
        async with self._client() as client:
            response = await client.post(
                "/2/tweets", headers=self._auth_headers(credential), json={"text": content}
            )
        self._raise_for_response(response)

        tweet_id = response.json().get("data", {}).get("id")
        if not tweet_id:
            raise TransientApiError(
                "X accepted the tweet but returned no id",
                platform=self.platform,
                status_code=response.status_code,
            )
        logger.info("[DISPATCH] Tweet created: %s", tweet_id)
        return PublishReceipt(
            external_id=tweet_id, url=f"https://x.com/i/web/status/{tweet_id}"
        )

    @with_retry(max_attempts=3, retryable_exceptions=(httpx.TransportError,))
    async def test_connection(self, credential: Credential) -> bool:
        await self._get_json("/2/users/me", credential)
        return True


# ======================================================================
# REGISTRY
# ======================================================================


class PublisherRegistry:
    """Maps platform keys to publishers."""

    def __init__(self, publishers: Optional[Dict[str, SocialPublisher]] = None) -> None:
        self._publishers: Dict[str, SocialPublisher] = dict(publishers or {})

    @classmethod
    def default(
        cls,
        base_urls: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "PublisherRegistry":
        """Registry with the built-in LinkedIn and X publishers."""
        base_urls = base_urls or {}
        x = XPublisher(base_urls.get("x"), timeout=timeout, transport=transport)
        return cls({
            "linkedin": LinkedInPublisher(
                base_urls.get("linkedin"), timeout=timeout, transport=transport
            ),
            "x": x,
            "twitter": x,
        })

    def register(self, platform: str, publisher: SocialPublisher) -> None:
        self._publishers[platform.lower()] = publisher

    def get(self, platform: str) -> SocialPublisher:
        """
        Raises:
            TerminalApiError: No publisher handles *platform*.
        """
        publisher = self._publishers.get(platform.lower())
        if publisher is None:
            raise TerminalApiError(
                f"No publisher registered for platform '{platform}'", platform=platform
            )
        return publisher

    @property
    def platforms(self) -> list:
        return sorted(self._publishers)

    def __contains__(self, platform: str) -> bool:
        return platform.lower() in self._publishers


__all__ = [
    "PublishReceipt",
    "SocialPublisher",
    "HttpPublisher",
    "LinkedInPublisher",
    "XPublisher",
    "PublisherRegistry",
]
