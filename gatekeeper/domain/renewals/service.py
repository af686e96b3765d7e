from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.config import AutoRenewConfig
from gatekeeper.core import db as dal
from gatekeeper.core.errors import NotFound, ValidationError
from gatekeeper.domain.entitlements.service import Entitlement, to_plan
from gatekeeper.domain.plans import RENEWABLE_PLANS

logger = logging.getLogger(__name__)


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class AutoRenewService:
    """Selects renewals that are due and tracks attempt outcomes.

    The cooldown in the due query is the only backoff: an account that was
    attempted recently is simply not selected again until it elapses. After
    ``max_failures`` consecutive failures auto-renew switches itself off and
    only an explicit toggle turns it back on.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession], cfg: AutoRenewConfig) -> None:
        self.sessions = sessions
        self.cfg = cfg

    async def list_due(self, horizon_days: int, *, now: Optional[datetime] = None) -> list[Entitlement]:
        if horizon_days <= 0:
            raise ValidationError("horizon must be a positive number of days")
        ts = _now(now)
        async with dal.transaction(self.sessions) as session:
            records = await dal.select_auto_renew_due(
                session,
                now=ts,
                until=ts + timedelta(days=horizon_days),
                cooldown_cutoff=ts - timedelta(hours=self.cfg.cooldown_hours),
            )
        return [Entitlement.from_record(record) for record in records]

    async def record_attempt(self, account_id: int, success: bool, *, now: Optional[datetime] = None) -> Entitlement:
        ts = _now(now)
        async with dal.transaction(self.sessions) as session:
            record = await dal.record_renew_attempt(
                session,
                account_id,
                success=bool(success),
                now=ts,
                max_failures=self.cfg.max_failures,
            )
        if record is None:
            raise NotFound(f"account {account_id} not found")

        entitlement = Entitlement.from_record(record)
        if not success and not entitlement.auto_renew and entitlement.auto_renew_fail_count >= self.cfg.max_failures:
            logger.warning(
                "auto-renew disabled for account %s after %s failed attempts",
                account_id,
                entitlement.auto_renew_fail_count,
            )
        return entitlement

    async def toggle(
        self,
        account_id: int,
        enable: bool,
        *,
        plan: Optional[str] = None,
        duration: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        ts = _now(now)
        async with dal.transaction(self.sessions) as session:
            record = await dal.get_entitlement(session, account_id, for_update=True)
            if record is None:
                raise NotFound(f"account {account_id} not found")

            values: dict[str, Any]
            if enable:
                if not record.get("payment_method_id"):
                    raise ValidationError("no payment method on file")
                if not plan:
                    raise ValidationError("plan is required to enable auto-renew")
                if duration is None:
                    raise ValidationError("duration is required to enable auto-renew")
                if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
                    raise ValidationError("duration must be a positive number of days")
                target = to_plan(plan)
                if target not in RENEWABLE_PLANS:
                    raise ValidationError(f"plan '{target.value}' cannot be auto-renewed")
                values = {
                    "auto_renew": True,
                    "auto_renew_plan": target.value,
                    "auto_renew_duration": duration,
                    "auto_renew_fail_count": 0,
                }
            else:
                values = {"auto_renew": False}

            updated = await dal.update_entitlement(session, account_id, values, now=ts)

        logger.info("auto-renew %s for account %s", "enabled" if enable else "disabled", account_id)
        return Entitlement.from_record(updated)


__all__ = ["AutoRenewService"]
