from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, TypedDict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.core import db as dal
from gatekeeper.core.errors import Conflict, NotFound, ValidationError

logger = logging.getLogger(__name__)


class RefInfo(TypedDict):
    account_id: int
    referral_id: Optional[int]
    referrals: list[int]
    payed_refs: int


def _ensure_utc(value: Optional[datetime] = None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def _forms_cycle(session: AsyncSession, child_id: int, parent_id: int) -> bool:
    current: Optional[int] = parent_id
    visited: set[int] = set()
    while current is not None:
        if current == child_id:
            return True
        if current in visited:
            break
        visited.add(current)
        record = await dal.get_entitlement(session, current, for_update=True)
        if record is None:
            break
        parent = record.get("referral_id")
        current = int(parent) if parent is not None else None
    return False


class ReferralService:
    """Single-parent invitation forest.

    A child gains its parent through one conditional UPDATE, so the first
    writer wins and no node ever has two parents. Both endpoints are
    write-locked in account order before the ancestor walk, which serializes
    reciprocal invites.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self.sessions = sessions

    async def add_referral(self, parent_id: int, child_id: int, *, now: Optional[datetime] = None) -> RefInfo:
        if parent_id == child_id:
            raise ValidationError("account cannot refer itself")
        ts = _ensure_utc(now)

        async with dal.transaction(self.sessions) as session:
            locked = {}
            for account_id in sorted((parent_id, child_id)):
                locked[account_id] = await dal.touch_entitlement(session, account_id, now=ts)
            parent = locked[parent_id]
            if parent is None:
                raise NotFound(f"account {parent_id} not found")
            child = locked[child_id]
            if child is None:
                raise NotFound(f"account {child_id} not found")

            existing = child.get("referral_id")
            if existing is not None:
                if int(existing) == parent_id:
                    raise Conflict(f"account {child_id} is already a referral of {parent_id}")
                raise Conflict(f"account {child_id} was already invited")

            if await _forms_cycle(session, child_id, parent_id):
                raise Conflict(f"account {parent_id} is already downstream of {child_id}")

            if not await dal.attach_referrer(session, child_id, parent_id, now=ts):
                raise Conflict(f"account {child_id} was already invited")

            children = await dal.list_referrals(session, parent_id)

        logger.info("account %s invited by %s", child_id, parent_id)
        return RefInfo(
            account_id=parent_id,
            referral_id=parent.get("referral_id"),
            referrals=children,
            payed_refs=int(parent["payed_refs"]),
        )

    async def get_info(self, account_id: int) -> RefInfo:
        async with dal.transaction(self.sessions) as session:
            record = await dal.get_entitlement(session, account_id)
            if record is None:
                raise NotFound(f"account {account_id} not found")
            children = await dal.list_referrals(session, account_id)
        return RefInfo(
            account_id=account_id,
            referral_id=record.get("referral_id"),
            referrals=children,
            payed_refs=int(record["payed_refs"]),
        )

    async def increment_payed_refs(self, account_id: int, *, now: Optional[datetime] = None) -> int:
        async with dal.transaction(self.sessions) as session:
            record = await dal.increment_payed_refs(session, account_id, now=_ensure_utc(now))
        if record is None:
            raise NotFound(f"account {account_id} not found")
        return int(record["payed_refs"])


__all__ = ["RefInfo", "ReferralService"]
