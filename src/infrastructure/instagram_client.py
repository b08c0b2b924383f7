# src/infrastructure/instagram_client.py
"""
Instagram Graph API client for publishing images.

Publishing flow (Content Publishing API):
    1. create a media container from a public HTTPS image url
    2. poll the container until its status_code is FINISHED
    3. publish the container
    4. look up the permalink (informational, never fails the publish)

Observed limits: 25 posts per rolling 24h per account, ~200 calls per user per hour.
"""
import asyncio
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
import structlog

from src.exceptions import (
    ContainerStateError,
    InstagramAPIError,
    PublishError,
    PublishTimeoutError,
    TokenRefreshError,
)

logger = structlog.get_logger(__name__)

INSTAGRAM_GRAPH_URL = os.getenv("INSTAGRAM_GRAPH_URL", "https://graph.instagram.com")
INSTAGRAM_API_VERSION = os.getenv("INSTAGRAM_API_VERSION", "v21.0")

CAPTION_MAX_LENGTH = 2200
POLL_MAX_ATTEMPTS = 30
POLL_INTERVAL_SECONDS = 2.0


def truncate_caption(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return text[:CAPTION_MAX_LENGTH]


@dataclass
class PublishResult:
    media_id: str
    container_id: str
    permalink: Optional[str] = None


class InstagramClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: int = 30,
        poll_max_attempts: int = POLL_MAX_ATTEMPTS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = (base_url or INSTAGRAM_GRAPH_URL).rstrip("/")
        self.api_version = api_version or INSTAGRAM_API_VERSION
        self.api_url = f"{self.base_url}/{self.api_version}"
        self.timeout = timeout
        self.poll_max_attempts = poll_max_attempts
        self.poll_interval = poll_interval
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _parse(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise InstagramAPIError(f"non-JSON response ({response.status_code}): {response.text[:200]}")

        if isinstance(body, dict) and body.get("error"):
            err = body["error"]
            if isinstance(err, dict):
                raise InstagramAPIError(err.get("message", "Unknown error"), err.get("code"))
            raise InstagramAPIError(str(err))
        if response.status_code >= 400:
            raise InstagramAPIError(f"HTTP {response.status_code}: {response.text[:200]}", response.status_code)
        if not isinstance(body, dict):
            raise InstagramAPIError(f"unexpected response body: {response.text[:200]}")
        return body

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise PublishError(f"Instagram request failed: {exc}") from exc
        return self._parse(response)

    # --- publishing steps ---

    async def create_container(
        self, access_token: str, ig_user_id: str, image_url: str, caption: Optional[str] = None
    ) -> str:
        data = {"image_url": image_url, "access_token": access_token}
        if caption:
            data["caption"] = caption
        body = await self._request("POST", f"{self.api_url}/{ig_user_id}/media", data=data)
        container_id = body.get("id")
        if not container_id:
            raise InstagramAPIError("container response is missing an id")
        logger.info("ig_container_created", container_id=container_id)
        return str(container_id)

    async def get_container_status(self, access_token: str, container_id: str) -> Dict[str, Any]:
        params = {"fields": "status_code,status", "access_token": access_token}
        return await self._request("GET", f"{self.api_url}/{container_id}", params=params)

    async def wait_for_container_ready(
        self,
        access_token: str,
        container_id: str,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> None:
        """
        Poll until the container is FINISHED.
        ERROR, EXPIRED, PUBLISHED or an unknown code end the wait immediately; nothing is retried here.
        """
        max_attempts = self.poll_max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        interval = self.poll_interval if interval is None else interval

        for attempt in range(1, max_attempts + 1):
            status = await self.get_container_status(access_token, container_id)
            code = status.get("status_code")

            if code == "FINISHED":
                logger.info("ig_container_ready", container_id=container_id, attempts=attempt)
                return
            if code == "IN_PROGRESS":
                if attempt < max_attempts:
                    await self._sleep(interval)
                continue
            if code == "ERROR":
                raise ContainerStateError(code, f"Container processing failed: {status.get('status') or 'Unknown error'}")
            if code == "EXPIRED":
                raise ContainerStateError(code, "Container expired before publishing")
            if code == "PUBLISHED":
                raise ContainerStateError(code, "Container was already published")
            raise ContainerStateError(str(code), f"Unknown container status: {code}")

        raise PublishTimeoutError(f"Container not ready after {max_attempts} attempts")

    async def publish_media(self, access_token: str, ig_user_id: str, container_id: str) -> str:
        data = {"creation_id": container_id, "access_token": access_token}
        body = await self._request("POST", f"{self.api_url}/{ig_user_id}/media_publish", data=data)
        media_id = body.get("id")
        if not media_id:
            raise InstagramAPIError("publish response is missing a media id")
        logger.info("ig_media_published", media_id=media_id)
        return str(media_id)

    async def get_permalink(self, access_token: str, media_id: str) -> Optional[str]:
        params = {"fields": "permalink", "access_token": access_token}
        try:
            body = await self._request("GET", f"{self.api_url}/{media_id}", params=params)
        except PublishError as exc:
            logger.warning("ig_permalink_failed", media_id=media_id, error=str(exc))
            return None
        return body.get("permalink") or None

    async def publish_image(
        self, access_token: str, ig_user_id: str, image_url: str, caption: Optional[str] = None
    ) -> PublishResult:
        container_id = await self.create_container(access_token, ig_user_id, image_url, caption)
        await self.wait_for_container_ready(access_token, container_id)
        media_id = await self.publish_media(access_token, ig_user_id, container_id)
        permalink = await self.get_permalink(access_token, media_id)
        return PublishResult(media_id=media_id, container_id=container_id, permalink=permalink)

    # --- token maintenance ---

    async def refresh_access_token(self, access_token: str) -> Tuple[str, int]:
        """Exchange a still-valid long-lived token for a fresh one (another ~60 days)."""
        params = {"grant_type": "ig_refresh_token", "access_token": access_token}
        try:
            body = await self._request("GET", f"{self.base_url}/refresh_access_token", params=params)
        except InstagramAPIError as exc:
            raise TokenRefreshError(f"Token refresh failed: {exc.api_message}") from exc
        except PublishError as exc:
            raise TokenRefreshError(f"Token refresh failed: {exc}") from exc

        new_token = body.get("access_token")
        expires_in = body.get("expires_in")
        if not new_token or expires_in is None:
            raise TokenRefreshError("Token refresh failed: incomplete response")
        return new_token, int(expires_in)
