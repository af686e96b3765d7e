from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.core import db as dal
from gatekeeper.core.db import Status
from gatekeeper.core.errors import UpstreamError, ValidationError
from gatekeeper.domain.provisioning.client import ProvisioningClient

logger = logging.getLogger(__name__)


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class ExpirySweeper:
    """Batch transitions ACTIVE -> GRACE -> INACTIVE.

    Each phase only matches rows in its source status, so concurrent runs
    claim disjoint sets and a repeated run with no elapsed time is a no-op.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession], provisioner: ProvisioningClient) -> None:
        self.sessions = sessions
        self.provisioner = provisioner

    async def advance_to_grace(self, horizon_days: int, *, now: Optional[datetime] = None) -> list[int]:
        if horizon_days <= 0:
            raise ValidationError("horizon must be a positive number of days")
        ts = _now(now)
        async with dal.transaction(self.sessions) as session:
            moved = await dal.advance_status(
                session,
                from_status=Status.ACTIVE,
                to_status=Status.GRACE,
                end_from=ts,
                end_before=ts + timedelta(days=horizon_days),
                now=ts,
            )
        if moved:
            logger.info("moved %s entitlements to grace: %s", len(moved), moved)
        return moved

    async def advance_to_inactive(self, *, now: Optional[datetime] = None) -> list[int]:
        ts = _now(now)
        async with dal.transaction(self.sessions) as session:
            expired = await dal.lock_expired(session, status=Status.GRACE, now=ts)
            if not expired:
                return []
            for row in expired:
                try:
                    await self.provisioner.revoke(row["external_key"])
                except UpstreamError:
                    logger.warning(
                        "revoke failed for account %s; rolling back batch of %s",
                        row["account_id"],
                        len(expired),
                    )
                    raise
            revoked = await dal.set_status_bulk(
                session,
                [row["account_id"] for row in expired],
                expected=Status.GRACE,
                status=Status.INACTIVE,
                now=ts,
            )
        logger.info("deactivated %s expired entitlements: %s", len(revoked), revoked)
        return revoked


__all__ = ["ExpirySweeper"]
