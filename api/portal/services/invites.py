from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from portal.services.repository import PostgresRepository

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "invite code is expired or no longer available"


class InviteCodeError(Exception):
    """Base error for invite-code redemption."""


class InviteCodeInputError(InviteCodeError):
    """Raised when no code was supplied."""


class InviteCodeUnavailableError(InviteCodeError):
    """Raised when the code is unknown, inactive, expired, exhausted or lost a race."""


@dataclass(slots=True)
class InviteRedemption:
    invite_code_id: str
    status: str
    used_count: int


async def redeem_invite_code(
    repository: PostgresRepository,
    code: str,
    *,
    user_id: str,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> InviteRedemption:
    trimmed = (code or "").strip()
    if not trimmed:
        raise InviteCodeInputError("code is required")

    row = await repository.get_invite_code(trimmed)
    if row is None or row.get("status") != "active":
        raise InviteCodeUnavailableError(UNAVAILABLE_MESSAGE)

    expires_at = row.get("expires_at")
    if isinstance(expires_at, datetime):
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at < now():
            raise InviteCodeUnavailableError(UNAVAILABLE_MESSAGE)

    observed = row.get("used_count")
    used_count = observed if isinstance(observed, int) else 0
    max_uses = row["max_uses"] if isinstance(row.get("max_uses"), int) else 1
    if used_count >= max_uses:
        raise InviteCodeUnavailableError(UNAVAILABLE_MESSAGE)

    redeemed = await repository.redeem_invite_code_row(
        invite_code_id=row["id"],
        observed_used_count=used_count,
        max_uses=max_uses,
        user_id=user_id,
    )
    if redeemed is None:
        # Single shot: a concurrent redemption changed the row first.
        raise InviteCodeUnavailableError(UNAVAILABLE_MESSAGE)

    logger.info("invite code redeemed invite_code_id=%s user_id=%s", row["id"], user_id)
    return InviteRedemption(
        invite_code_id=row["id"],
        status=redeemed["status"],
        used_count=redeemed["used_count"],
    )
