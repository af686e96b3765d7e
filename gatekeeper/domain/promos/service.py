from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Sequence, TypedDict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.core import db as dal
from gatekeeper.core.errors import Conflict, NotFound, ValidationError
from gatekeeper.domain.plans import parse_plan

logger = logging.getLogger(__name__)

RejectReason = Literal["not_found", "inactive", "exhausted", "not_applicable", "already_used"]


class PromoInfo(TypedDict):
    code: str
    discount_percent: int
    applicable_tariffs: list[str]
    max_uses: int
    current_uses: int
    is_active: bool


class PromoCheck(TypedDict, total=False):
    valid: bool
    reason: Optional[RejectReason]
    code: str
    discount_percent: int
    applicable_tariffs: list[str]


class PromoUse(TypedDict):
    code: str
    account_id: int
    discount_percent: int
    current_uses: int
    max_uses: int


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _ensure_utc(value: Optional[datetime] = None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _build_info(record: dict[str, Any]) -> PromoInfo:
    return PromoInfo(
        code=str(record["code"]),
        discount_percent=int(record["discount_percent"]),
        applicable_tariffs=list(record.get("applicable_tariffs") or []),
        max_uses=int(record["max_uses"]),
        current_uses=int(record["current_uses"]),
        is_active=bool(record["is_active"]),
    )


def _rejected(reason: RejectReason) -> PromoCheck:
    return PromoCheck(valid=False, reason=reason)


def tariff_applies(applicable: Sequence[str], tariff: Optional[str]) -> bool:
    """An empty tariff always passes; an empty applicable list covers every plan."""
    normalized = (tariff or "").strip().lower()
    if not normalized or not applicable:
        return True
    return normalized in applicable


class PromoService:
    """Promo codes and the append-only ledger of their redemptions.

    The unique (code, account) constraint on the ledger is the only guard
    between concurrent redemptions: the loser fails with Conflict and its
    transaction rolls back together with the counter increment.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self.sessions = sessions

    async def create(
        self,
        code: str,
        *,
        discount_percent: int,
        applicable_tariffs: Sequence[str] = (),
        max_uses: int,
        now: Optional[datetime] = None,
    ) -> PromoInfo:
        normalized = normalize_code(code)
        if not normalized:
            raise ValidationError("code must be non-empty")
        if isinstance(discount_percent, bool) or not isinstance(discount_percent, int) or not 1 <= discount_percent <= 100:
            raise ValidationError("discount_percent must be between 1 and 100")
        if isinstance(max_uses, bool) or not isinstance(max_uses, int) or max_uses < 1:
            raise ValidationError("max_uses must be a positive integer")
        tariffs: list[str] = []
        for value in applicable_tariffs:
            try:
                plan = parse_plan(value).value
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if plan not in tariffs:
                tariffs.append(plan)

        async with dal.transaction(self.sessions) as session:
            record = await dal.insert_promo(
                session,
                code=normalized,
                discount_percent=discount_percent,
                applicable_tariffs=tariffs,
                max_uses=max_uses,
                now=_ensure_utc(now),
            )
        logger.info("promo %s created: %s%% x%s", normalized, discount_percent, max_uses)
        return _build_info(record)

    async def list_all(self) -> list[PromoInfo]:
        async with dal.transaction(self.sessions) as session:
            records = await dal.list_promos(session)
        return [_build_info(record) for record in records]

    async def deactivate(self, code: str) -> PromoInfo:
        normalized = normalize_code(code)
        async with dal.transaction(self.sessions) as session:
            record = await dal.set_promo_active(session, normalized, False)
        if record is None:
            raise NotFound(f"promo code {normalized!r} not found")
        logger.info("promo %s deactivated", normalized)
        return _build_info(record)

    async def validate(self, code: str, tariff: Optional[str], account_id: int) -> PromoCheck:
        normalized = normalize_code(code)
        async with dal.transaction(self.sessions) as session:
            record = await dal.get_promo(session, normalized)
            if record is None:
                return _rejected("not_found")
            if not record["is_active"]:
                return _rejected("inactive")
            if int(record["current_uses"]) >= int(record["max_uses"]):
                return _rejected("exhausted")
            applicable = list(record.get("applicable_tariffs") or [])
            if not tariff_applies(applicable, tariff):
                return _rejected("not_applicable")
            if await dal.has_promo_usage(session, normalized, account_id):
                return _rejected("already_used")

        return PromoCheck(
            valid=True,
            reason=None,
            code=normalized,
            discount_percent=int(record["discount_percent"]),
            applicable_tariffs=applicable,
        )

    async def use(self, code: str, account_id: int, *, now: Optional[datetime] = None) -> PromoUse:
        normalized = normalize_code(code)
        ts = _ensure_utc(now)
        async with dal.transaction(self.sessions) as session:
            record = await dal.get_promo(session, normalized, for_update=True)
            if record is None:
                raise NotFound(f"promo code {normalized!r} not found")
            if not record["is_active"]:
                raise Conflict(f"promo code {normalized!r} is inactive")

            await dal.insert_promo_usage(session, normalized, account_id, now=ts)

            updated = await dal.increment_promo_uses(session, normalized)
            if updated is None:
                raise Conflict(f"promo code {normalized!r} is exhausted")

        logger.info("promo %s used by account %s (%s/%s)", normalized, account_id, updated["current_uses"], updated["max_uses"])
        return PromoUse(
            code=normalized,
            account_id=account_id,
            discount_percent=int(updated["discount_percent"]),
            current_uses=int(updated["current_uses"]),
            max_uses=int(updated["max_uses"]),
        )


__all__ = [
    "PromoInfo",
    "PromoCheck",
    "PromoUse",
    "PromoService",
    "normalize_code",
    "tariff_applies",
]
