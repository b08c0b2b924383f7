# src/infrastructure/push_client.py
import os
from typing import Dict, Optional

import httpx
import structlog

from src.exceptions import NotificationError

logger = structlog.get_logger(__name__)

FCM_PROJECT_ID = os.getenv("FCM_PROJECT_ID", "")
FCM_ACCESS_TOKEN = os.getenv("FCM_ACCESS_TOKEN", "")
FCM_API_URL = os.getenv("FCM_API_URL", "https://fcm.googleapis.com/v1")


class FcmPushClient:
    """Firebase Cloud Messaging (HTTP v1) sender, one device token per call."""

    def __init__(
        self,
        project_id: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: int = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.project_id = project_id or FCM_PROJECT_ID
        self.access_token = access_token or FCM_ACCESS_TOKEN
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.project_id and self.access_token)

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        image_url: Optional[str] = None,
        data: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        """Returns the FCM message name, or None when push is not configured."""
        if not self.configured:
            logger.info("push_send_stub", title=title)
            return None

        notification = {"title": title, "body": body}
        if image_url:
            notification["image"] = image_url
        message = {
            "token": token,
            "notification": notification,
            "data": {k: str(v) for k, v in (data or {}).items()},
            "webpush": {"fcm_options": {"link": "/"}},
        }
        headers = {"Authorization": f"Bearer {self.access_token}"}
        url = f"{FCM_API_URL}/projects/{self.project_id}/messages:send"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json={"message": message}, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationError(f"Push send failed: {exc}") from exc

        if response.status_code >= 400:
            raise NotificationError(f"Push send failed ({response.status_code}): {response.text[:200]}")

        message_id = response.json().get("name")
        logger.info("push_sent", message_id=message_id)
        return message_id
