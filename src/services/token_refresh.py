# src/services/token_refresh.py
"""
Keeps long-lived Instagram tokens alive.

Tokens last about 60 days; anything expiring within the threshold is exchanged
for a fresh one.  Expired tokens cannot be refreshed, only reconnected.
"""
from datetime import timedelta
from typing import Callable, Dict, Optional

import structlog
from sqlmodel import select

from src.infrastructure.database import get_session
from src.infrastructure.instagram_client import InstagramClient
from src.models.enums import NotificationType
from src.models.instagram_account import InstagramAccount
from src.services.notifier import Notifier
from src.utils import decrypt_token, encrypt_token, utcnow

logger = structlog.get_logger(__name__)

REFRESH_THRESHOLD_DAYS = 7


class TokenRefresher:
    def __init__(
        self,
        instagram: InstagramClient,
        notifier: Optional[Notifier] = None,
        session_factory: Callable = get_session,
        clock: Callable = utcnow,
    ):
        self.instagram = instagram
        self.notifier = notifier or Notifier(session_factory=session_factory)
        self.session_factory = session_factory
        self._clock = clock

    async def refresh_expiring_tokens(self, threshold_days: int = REFRESH_THRESHOLD_DAYS) -> Dict[str, int]:
        now = self._clock()
        threshold = now + timedelta(days=threshold_days)

        async with self.session_factory() as session:
            res = await session.execute(
                select(InstagramAccount).where(InstagramAccount.token_expires_at <= threshold)
            )
            accounts = list(res.scalars().all())

        logger.info("token_refresh_started", accounts=len(accounts), threshold_days=threshold_days)
        success = failed = 0

        for account in accounts:
            if account.is_expired(now):
                logger.info("token_already_expired", account_id=str(account.id), username=account.username)
                failed += 1
                continue

            try:
                token = decrypt_token(account.access_token_enc)
                if not token:
                    raise ValueError("stored token could not be decrypted")
                new_token, expires_in = await self.instagram.refresh_access_token(token)
                await self._save(account, new_token, now + timedelta(seconds=expires_in))
            except Exception as exc:
                failed += 1
                logger.warning("token_refresh_failed", account_id=str(account.id), username=account.username, error=str(exc))
                await self.notifier.record(
                    account.user_id,
                    NotificationType.REMINDER,
                    "Instagram Token Expiring",
                    "Your Instagram connection is expiring. Please reconnect in Settings.",
                )
                continue
            success += 1

        result = {"total": len(accounts), "success": success, "failed": failed}
        logger.info("token_refresh_finished", **result)
        return result

    async def _save(self, account: InstagramAccount, token: str, expires_at) -> None:
        async with self.session_factory() as session:
            db_account = await session.get(InstagramAccount, account.id)
            if db_account is None:
                return
            db_account.access_token_enc = encrypt_token(token)
            db_account.token_expires_at = expires_at
            db_account.updated_at = self._clock()
            session.add(db_account)
            await session.commit()
        logger.info("token_refreshed", account_id=str(account.id), expires_at=expires_at.isoformat())
