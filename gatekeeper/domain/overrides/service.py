from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.config import OverrideConfig
from gatekeeper.core import db as dal
from gatekeeper.core.errors import Conflict, GatekeeperError, NotFound
from gatekeeper.domain.entitlements.service import push_state
from gatekeeper.domain.provisioning.client import ProvisioningClient

logger = logging.getLogger(__name__)

RESTORE_RETRY_DELAY = timedelta(minutes=1)


@dataclass(frozen=True)
class LimitOverride:
    account_id: int
    original_limit: int
    restore_at: datetime

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "LimitOverride":
        return cls(
            account_id=int(record["account_id"]),
            original_limit=int(record["original_limit"]),
            restore_at=record["restore_at"],
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "original_limit": self.original_limit,
            "restore_at": self.restore_at.isoformat(),
        }


def restore_job_id(account_id: int) -> str:
    return f"limit_restore:{account_id}"


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class OverrideService:
    """Temporarily drops an account's device limit to zero and restores it later.

    The pending restoration is a row in ``limit_overrides``; the scheduler job
    is only a wake-up call, so ``recover`` can rebuild every job after a restart.
    """

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        provisioner: ProvisioningClient,
        cfg: OverrideConfig,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.sessions = sessions
        self.provisioner = provisioner
        self.cfg = cfg
        self.scheduler = scheduler

    async def disable_limit_temporarily(self, account_id: int, *, now: Optional[datetime] = None) -> LimitOverride:
        ts = _now(now)
        restore_at = ts + timedelta(minutes=self.cfg.delay_minutes)

        async with dal.transaction(self.sessions) as session:
            record = await dal.get_entitlement(session, account_id, for_update=True)
            if record is None:
                raise NotFound(f"account {account_id} not found")
            if await dal.get_override(session, account_id, for_update=True) is not None:
                raise Conflict(f"account {account_id} already has a pending limit override")

            await push_state(self.provisioner, record, device_limit=0)
            override = await dal.insert_override(
                session,
                account_id,
                original_limit=int(record["device_limit"]),
                restore_at=restore_at,
                now=ts,
            )

        self._arm(account_id, restore_at)
        logger.info("device limit of account %s disabled until %s", account_id, restore_at.isoformat())
        return LimitOverride.from_record(override)

    async def restore(self, account_id: int) -> bool:
        async with dal.transaction(self.sessions) as session:
            record = await dal.get_entitlement(session, account_id, for_update=True)
            override = await dal.get_override(session, account_id, for_update=True)
            if override is None:
                return False
            if record is not None:
                await push_state(self.provisioner, record, device_limit=int(override["original_limit"]))
            await dal.delete_override(session, account_id)

        logger.info("device limit of account %s restored to %s", account_id, override["original_limit"])
        return True

    async def recover(self, *, now: Optional[datetime] = None) -> list[int]:
        """Restore overdue overrides now and re-arm the rest; returns the restored ids."""
        ts = _now(now)
        async with dal.transaction(self.sessions) as session:
            pending = await dal.list_overrides(session)

        restored: list[int] = []
        for row in pending:
            account_id = int(row["account_id"])
            if row["restore_at"] > ts:
                self._arm(account_id, row["restore_at"])
                continue
            try:
                if await self.restore(account_id):
                    restored.append(account_id)
            except GatekeeperError as exc:
                logger.warning("overdue restore for account %s failed (%s), retrying later", account_id, exc)
                self._arm(account_id, ts + RESTORE_RETRY_DELAY)

        if pending:
            logger.info("recovered %s limit overrides, %s restored immediately", len(pending), len(restored))
        return restored

    async def run_restore(self, account_id: int) -> None:
        try:
            await self.restore(account_id)
        except GatekeeperError as exc:
            logger.warning("restore for account %s failed (%s), retrying in %s", account_id, exc, RESTORE_RETRY_DELAY)
            self._arm(account_id, _now(None) + RESTORE_RETRY_DELAY)
        except Exception:
            logger.exception("restore job for account %s crashed", account_id)
            self._arm(account_id, _now(None) + RESTORE_RETRY_DELAY)

    def _arm(self, account_id: int, restore_at: datetime) -> None:
        if self.scheduler is None:
            return
        self.scheduler.add_job(
            self.run_restore,
            DateTrigger(run_date=restore_at),
            args=[account_id],
            id=restore_job_id(account_id),
            replace_existing=True,
            misfire_grace_time=None,
        )


__all__ = ["LimitOverride", "OverrideService", "restore_job_id", "RESTORE_RETRY_DELAY"]
