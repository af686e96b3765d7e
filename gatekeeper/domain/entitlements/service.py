from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.core import db as dal
from gatekeeper.core.db import Status
from gatekeeper.core.errors import Conflict, InternalError, NotFound, UpstreamError, ValidationError
from gatekeeper.domain.plans import Limits, Plan, parse_plan, plan_limits
from gatekeeper.domain.provisioning.client import ProvisioningClient, RemoteStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entitlement:
    account_id: int
    external_key: str
    subscription_end: datetime
    status: Status
    plan: str
    device_limit: int
    referral_id: Optional[int]
    is_used_trial: bool
    is_used_ref_bonus: bool
    payed_refs: int
    auto_renew: bool
    payment_method_id: Optional[str]
    auto_renew_plan: Optional[str]
    auto_renew_duration: Optional[int]
    auto_renew_last_attempt: Optional[datetime]
    auto_renew_fail_count: int
    is_pro: bool

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Entitlement":
        referral_id = record.get("referral_id")
        return cls(
            account_id=int(record["account_id"]),
            external_key=str(record["external_key"]),
            subscription_end=record["subscription_end"],
            status=Status(int(record["status"])),
            plan=str(record["plan"]),
            device_limit=int(record["device_limit"]),
            referral_id=int(referral_id) if referral_id is not None else None,
            is_used_trial=bool(record["is_used_trial"]),
            is_used_ref_bonus=bool(record["is_used_ref_bonus"]),
            payed_refs=int(record["payed_refs"]),
            auto_renew=bool(record["auto_renew"]),
            payment_method_id=record.get("payment_method_id"),
            auto_renew_plan=record.get("auto_renew_plan"),
            auto_renew_duration=record.get("auto_renew_duration"),
            auto_renew_last_attempt=record.get("auto_renew_last_attempt"),
            auto_renew_fail_count=int(record["auto_renew_fail_count"]),
            is_pro=bool(record["is_pro"]),
        )

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.name
        payload["subscription_end"] = self.subscription_end.isoformat()
        if self.auto_renew_last_attempt is not None:
            payload["auto_renew_last_attempt"] = self.auto_renew_last_attempt.isoformat()
        return payload


def _ensure_utc(value: Optional[datetime] = None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_plan(value: str) -> Plan:
    try:
        return parse_plan(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def next_subscription_end(
    stored_plan: str,
    stored_end: datetime,
    plan: Plan,
    days: int,
    now: datetime,
) -> datetime:
    """Same-plan and introductory extensions stack on the current period; a plan change restarts it."""
    plan_changed = stored_plan != plan.value and not plan.is_introductory
    effective_start = now if plan_changed else max(_ensure_utc(stored_end), now)
    return effective_start + timedelta(days=days)


def remote_status(status: Status) -> RemoteStatus:
    return "DISABLED" if status == Status.INACTIVE else "ACTIVE"


async def push_state(
    provisioner: ProvisioningClient,
    record: dict[str, Any],
    *,
    device_limit: Optional[int] = None,
) -> None:
    """Send the stored entitlement to the panel, optionally with a different device limit."""
    try:
        plan = parse_plan(record["plan"])
    except ValueError:
        plan = Plan.FREE
    limits = Limits(
        device_limit=int(record["device_limit"]) if device_limit is None else device_limit,
        traffic_limit_bytes=plan.spec.traffic_limit_bytes,
    )
    await provisioner.update(
        record["external_key"],
        status=remote_status(Status(int(record["status"]))),
        limits=limits,
        expire_at=record["subscription_end"],
        tag=plan.tag,
        squads=plan.spec.squads,
    )


class EntitlementService:
    """Registration, extension and flag writes for account entitlements."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession], provisioner: ProvisioningClient) -> None:
        self.sessions = sessions
        self.provisioner = provisioner

    async def register(self, account_id: int, plan: Optional[str] = None, *, now: Optional[datetime] = None) -> Entitlement:
        ts = _ensure_utc(now)
        selected = to_plan(plan) if plan else Plan.FREE

        async with dal.transaction(self.sessions) as session:
            if await dal.get_entitlement(session, account_id) is not None:
                raise Conflict(f"account {account_id} is already registered")

        limits = plan_limits(selected)
        external_key = await self.provisioner.create(account_id, limits, expire_at=ts)

        try:
            async with dal.transaction(self.sessions) as session:
                record = await dal.insert_entitlement(
                    session,
                    account_id=account_id,
                    external_key=external_key,
                    plan=selected.value,
                    device_limit=limits.device_limit,
                    subscription_end=ts,
                    now=ts,
                )
        except (Conflict, InternalError):
            await self._discard_remote(account_id, external_key)
            raise

        logger.info("registered account %s on plan %s", account_id, selected.value)
        return Entitlement.from_record(record)

    async def get(self, account_id: int) -> Entitlement:
        async with dal.transaction(self.sessions) as session:
            record = await dal.get_entitlement(session, account_id)
        if record is None:
            raise NotFound(f"account {account_id} not found")
        return Entitlement.from_record(record)

    async def list_all(self, *, limit: int = 100, offset: int = 0) -> list[Entitlement]:
        async with dal.transaction(self.sessions) as session:
            records = await dal.list_entitlements(session, limit=limit, offset=offset)
        return [Entitlement.from_record(record) for record in records]

    async def extend(
        self,
        account_id: int,
        days: int,
        plan: str,
        *,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
            raise ValidationError("days must be a positive integer")
        target = to_plan(plan)
        ts = _ensure_utc(now)
        limits = plan_limits(target)

        async with dal.transaction(self.sessions) as session:
            record = await dal.get_entitlement(session, account_id, for_update=True)
            if record is None:
                raise NotFound(f"account {account_id} not found")

            new_end = next_subscription_end(record["plan"], record["subscription_end"], target, days, ts)
            override = await dal.get_override(session, account_id, for_update=True)
            remote_limits = limits.with_devices(0) if override is not None else limits

            await self.provisioner.update(
                record["external_key"],
                status="ACTIVE",
                limits=remote_limits,
                expire_at=new_end,
                tag=target.tag,
                squads=target.spec.squads,
            )

            updated = await dal.update_entitlement(
                session,
                account_id,
                {
                    "subscription_end": new_end,
                    "status": int(Status.ACTIVE),
                    "plan": target.value,
                    "device_limit": limits.device_limit,
                },
                now=ts,
            )
            if override is not None:
                await dal.set_override_limit(session, account_id, limits.device_limit)

        logger.info("extended account %s by %s days on %s until %s", account_id, days, target.value, new_end.isoformat())
        return Entitlement.from_record(updated)

    async def set_trial_used(self, account_id: int, used: bool = True, *, now: Optional[datetime] = None) -> Entitlement:
        return await self._write_fields(account_id, {"is_used_trial": bool(used)}, now=now)

    async def set_ref_bonus_used(self, account_id: int, used: bool = True, *, now: Optional[datetime] = None) -> Entitlement:
        return await self._write_fields(account_id, {"is_used_ref_bonus": bool(used)}, now=now)

    async def set_pro(self, account_id: int, enabled: bool, *, now: Optional[datetime] = None) -> Entitlement:
        return await self._write_fields(account_id, {"is_pro": bool(enabled)}, now=now)

    async def set_payment_method(
        self,
        account_id: int,
        payment_method_id: Optional[str],
        *,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        method = (payment_method_id or "").strip() or None
        values: dict[str, Any] = {"payment_method_id": method}
        if method is None:
            values["auto_renew"] = False
        return await self._write_fields(account_id, values, now=now)

    async def _write_fields(self, account_id: int, values: dict[str, Any], *, now: Optional[datetime]) -> Entitlement:
        async with dal.transaction(self.sessions) as session:
            record = await dal.update_entitlement(session, account_id, values, now=_ensure_utc(now))
        if record is None:
            raise NotFound(f"account {account_id} not found")
        return Entitlement.from_record(record)

    async def _discard_remote(self, account_id: int, external_key: str) -> None:
        try:
            await self.provisioner.revoke(external_key)
        except UpstreamError:
            logger.exception("failed to revoke orphaned panel user %s for account %s", external_key, account_id)


__all__ = [
    "Entitlement",
    "EntitlementService",
    "next_subscription_end",
    "push_state",
    "remote_status",
    "to_plan",
]
