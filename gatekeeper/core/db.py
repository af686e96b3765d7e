from __future__ import annotations

import asyncio
from asyncio.subprocess import PIPE
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    SmallInteger,
    Table,
    Text,
    UniqueConstraint,
    case,
    delete,
    false,
    func,
    insert,
    or_,
    select,
    text,
    true,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gatekeeper.config import PostgresCfg
from gatekeeper.core.errors import Conflict, InternalError


metadata = MetaData()

# SQLite only auto-increments INTEGER PRIMARY KEY columns
_BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Status(IntEnum):
    INACTIVE = 0
    ACTIVE = 1
    GRACE = 2


entitlements = Table(
    "entitlements",
    metadata,
    Column("account_id", BigInteger, primary_key=True, autoincrement=False),
    Column("external_key", Text, nullable=False, unique=True),
    Column("subscription_end", DateTime(timezone=True), nullable=False),
    Column("status", SmallInteger, nullable=False, server_default=text("0")),
    Column("plan", Text, nullable=False),
    Column("device_limit", Integer, nullable=False, server_default=text("1")),
    Column("referral_id", BigInteger, ForeignKey("entitlements.account_id"), nullable=True),
    Column("is_used_trial", Boolean, nullable=False, server_default=false()),
    Column("is_used_ref_bonus", Boolean, nullable=False, server_default=false()),
    Column("payed_refs", Integer, nullable=False, server_default=text("0")),
    Column("auto_renew", Boolean, nullable=False, server_default=false()),
    Column("payment_method_id", Text, nullable=True),
    Column("auto_renew_plan", Text, nullable=True),
    Column("auto_renew_duration", Integer, nullable=True),
    Column("auto_renew_last_attempt", DateTime(timezone=True), nullable=True),
    Column("auto_renew_fail_count", Integer, nullable=False, server_default=text("0")),
    Column("is_pro", Boolean, nullable=False, server_default=false()),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("status IN (0, 1, 2)", name="ck_entitlements_status"),
    CheckConstraint("auto_renew_fail_count >= 0", name="ck_entitlements_fail_count"),
)

Index("ix_entitlements_status_end", entitlements.c.status, entitlements.c.subscription_end)
Index("ix_entitlements_referral_id", entitlements.c.referral_id)
Index(
    "ix_entitlements_auto_renew_due",
    entitlements.c.subscription_end,
    postgresql_where=entitlements.c.auto_renew,
)

promo_codes = Table(
    "promo_codes",
    metadata,
    Column("code", Text, primary_key=True),
    Column("discount_percent", Integer, nullable=False),
    Column("applicable_tariffs", JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    Column("max_uses", Integer, nullable=False),
    Column("current_uses", Integer, nullable=False, server_default=text("0")),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("discount_percent BETWEEN 1 AND 100", name="ck_promo_codes_discount"),
    CheckConstraint("max_uses >= 1", name="ck_promo_codes_max_uses"),
    CheckConstraint("current_uses >= 0 AND current_uses <= max_uses", name="ck_promo_codes_current_uses"),
)

promo_usages = Table(
    "promo_usages",
    metadata,
    Column("id", _BigIntPK, primary_key=True, autoincrement=True),
    Column("code", Text, ForeignKey("promo_codes.code", ondelete="CASCADE"), nullable=False),
    Column("account_id", BigInteger, nullable=False),
    Column("used_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("code", "account_id", name="uq_promo_usages_code_account"),
)

Index("ix_promo_usages_account_id", promo_usages.c.account_id)

limit_overrides = Table(
    "limit_overrides",
    metadata,
    Column(
        "account_id",
        BigInteger,
        ForeignKey("entitlements.account_id", ondelete="CASCADE"),
        primary_key=True,
        autoincrement=False,
    ),
    Column("original_limit", Integer, nullable=False),
    Column("restore_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

Index("ix_limit_overrides_restore_at", limit_overrides.c.restore_at)

PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENTITLEMENT_MUTABLE_FIELDS = frozenset(
    [
        "subscription_end",
        "status",
        "plan",
        "device_limit",
        "is_used_trial",
        "is_used_ref_bonus",
        "auto_renew",
        "payment_method_id",
        "auto_renew_plan",
        "auto_renew_duration",
        "auto_renew_fail_count",
        "is_pro",
    ]
)


def _ensure_datetime_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _as_dict(row: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(row)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = _ensure_datetime_utc(value)
    return data


def build_engine(pg: PostgresCfg) -> AsyncEngine:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if pg.url.startswith("postgresql"):
        options.update(pool_size=10, max_overflow=10)
    return create_async_engine(pg.url, **options)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@asynccontextmanager
async def transaction(sessions: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Run the body in one transaction; storage failures surface as InternalError."""
    try:
        async with sessions() as session, session.begin():
            yield session
    except SQLAlchemyError as exc:
        raise InternalError(f"storage failure: {exc.__class__.__name__}") from exc


async def init_db(engine: AsyncEngine, pg: PostgresCfg) -> None:
    if pg.run_migrations:
        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "alembic",
            "upgrade",
            "head",
            cwd=str(PROJECT_ROOT),
            stdout=PIPE,
            stderr=PIPE,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            stderr_text = (stderr.decode() if stderr else "").strip()
            raise RuntimeError(f"alembic upgrade head failed: {stderr_text}")
        return

    if pg.dev_create_all:
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        return

    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


# entitlements


async def get_entitlement(
    session: AsyncSession,
    account_id: int,
    *,
    for_update: bool = False,
) -> Optional[dict[str, Any]]:
    stmt = select(entitlements).where(entitlements.c.account_id == account_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


async def list_entitlements(session: AsyncSession, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
    if limit <= 0:
        return []
    stmt = select(entitlements).order_by(entitlements.c.account_id).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return [_as_dict(row) for row in result.mappings().all()]


async def insert_entitlement(
    session: AsyncSession,
    *,
    account_id: int,
    external_key: str,
    plan: str,
    device_limit: int,
    subscription_end: datetime,
    now: datetime,
) -> dict[str, Any]:
    stmt = (
        insert(entitlements)
        .values(
            account_id=account_id,
            external_key=external_key,
            subscription_end=subscription_end,
            status=int(Status.INACTIVE),
            plan=plan,
            device_limit=device_limit,
            created_at=now,
            updated_at=now,
        )
        .returning(entitlements)
    )
    try:
        result = await session.execute(stmt)
    except IntegrityError as exc:
        raise Conflict(f"account {account_id} is already registered") from exc
    return _as_dict(result.mappings().one())


async def update_entitlement(
    session: AsyncSession,
    account_id: int,
    values: dict[str, Any],
    *,
    now: datetime,
) -> Optional[dict[str, Any]]:
    unexpected = set(values) - ENTITLEMENT_MUTABLE_FIELDS
    if unexpected:
        raise ValueError(f"unexpected entitlement fields: {', '.join(sorted(unexpected))}")

    stmt = (
        update(entitlements)
        .where(entitlements.c.account_id == account_id)
        .values(**values, updated_at=now)
        .returning(entitlements)
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


async def advance_status(
    session: AsyncSession,
    *,
    from_status: Status,
    to_status: Status,
    end_from: datetime,
    end_before: datetime,
    now: datetime,
) -> list[int]:
    """Move every row in ``from_status`` whose expiry falls in ``[end_from, end_before)``."""
    stmt = (
        update(entitlements)
        .where(entitlements.c.status == int(from_status))
        .where(entitlements.c.subscription_end >= end_from)
        .where(entitlements.c.subscription_end < end_before)
        .values(status=int(to_status), updated_at=now)
        .returning(entitlements.c.account_id)
    )
    result = await session.execute(stmt)
    return sorted(int(value) for value in result.scalars().all())


async def lock_expired(session: AsyncSession, *, status: Status, now: datetime) -> list[dict[str, Any]]:
    stmt = (
        select(entitlements.c.account_id, entitlements.c.external_key)
        .where(entitlements.c.status == int(status))
        .where(entitlements.c.subscription_end < now)
        .order_by(entitlements.c.account_id)
        .with_for_update()
    )
    result = await session.execute(stmt)
    return [dict(row) for row in result.mappings().all()]


async def set_status_bulk(
    session: AsyncSession,
    account_ids: Iterable[int],
    *,
    expected: Status,
    status: Status,
    now: datetime,
) -> list[int]:
    ids = list(account_ids)
    if not ids:
        return []
    stmt = (
        update(entitlements)
        .where(entitlements.c.account_id.in_(ids))
        .where(entitlements.c.status == int(expected))
        .values(status=int(status), updated_at=now)
        .returning(entitlements.c.account_id)
    )
    result = await session.execute(stmt)
    return sorted(int(value) for value in result.scalars().all())


async def select_auto_renew_due(
    session: AsyncSession,
    *,
    now: datetime,
    until: datetime,
    cooldown_cutoff: datetime,
) -> list[dict[str, Any]]:
    last_attempt = entitlements.c.auto_renew_last_attempt
    stmt = (
        select(entitlements)
        .where(entitlements.c.auto_renew.is_(True))
        .where(entitlements.c.payment_method_id.is_not(None))
        .where(entitlements.c.status.in_([int(Status.ACTIVE), int(Status.GRACE)]))
        .where(entitlements.c.subscription_end >= now)
        .where(entitlements.c.subscription_end < until)
        .where(or_(last_attempt.is_(None), last_attempt <= cooldown_cutoff))
        .order_by(entitlements.c.subscription_end, entitlements.c.account_id)
    )
    result = await session.execute(stmt)
    return [_as_dict(row) for row in result.mappings().all()]


async def record_renew_attempt(
    session: AsyncSession,
    account_id: int,
    *,
    success: bool,
    now: datetime,
    max_failures: int,
) -> Optional[dict[str, Any]]:
    if success:
        values: dict[str, Any] = {"auto_renew_fail_count": 0}
    else:
        failures = entitlements.c.auto_renew_fail_count + 1
        values = {
            "auto_renew_fail_count": failures,
            "auto_renew": case((failures >= max_failures, false()), else_=entitlements.c.auto_renew),
        }

    stmt = (
        update(entitlements)
        .where(entitlements.c.account_id == account_id)
        .values(**values, auto_renew_last_attempt=now, updated_at=now)
        .returning(entitlements)
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


# referral graph


async def touch_entitlement(session: AsyncSession, account_id: int, *, now: datetime) -> Optional[dict[str, Any]]:
    """Write-lock one row and return it; None when the account is missing."""
    stmt = (
        update(entitlements)
        .where(entitlements.c.account_id == account_id)
        .values(updated_at=now)
        .returning(entitlements)
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


async def attach_referrer(session: AsyncSession, child_id: int, parent_id: int, *, now: datetime) -> bool:
    stmt = (
        update(entitlements)
        .where(entitlements.c.account_id == child_id)
        .where(entitlements.c.referral_id.is_(None))
        .values(referral_id=parent_id, updated_at=now)
        .returning(entitlements.c.account_id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def list_referrals(session: AsyncSession, parent_id: int) -> list[int]:
    stmt = (
        select(entitlements.c.account_id)
        .where(entitlements.c.referral_id == parent_id)
        .order_by(entitlements.c.account_id)
    )
    result = await session.execute(stmt)
    return [int(value) for value in result.scalars().all()]


async def increment_payed_refs(session: AsyncSession, account_id: int, *, now: datetime) -> Optional[dict[str, Any]]:
    stmt = (
        update(entitlements)
        .where(entitlements.c.account_id == account_id)
        .values(payed_refs=entitlements.c.payed_refs + 1, updated_at=now)
        .returning(entitlements)
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


# promo ledger


async def get_promo(session: AsyncSession, code: str, *, for_update: bool = False) -> Optional[dict[str, Any]]:
    stmt = select(promo_codes).where(promo_codes.c.code == code)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


async def list_promos(session: AsyncSession) -> list[dict[str, Any]]:
    result = await session.execute(select(promo_codes).order_by(promo_codes.c.created_at, promo_codes.c.code))
    return [_as_dict(row) for row in result.mappings().all()]


async def insert_promo(
    session: AsyncSession,
    *,
    code: str,
    discount_percent: int,
    applicable_tariffs: list[str],
    max_uses: int,
    now: datetime,
) -> dict[str, Any]:
    stmt = (
        insert(promo_codes)
        .values(
            code=code,
            discount_percent=discount_percent,
            applicable_tariffs=applicable_tariffs,
            max_uses=max_uses,
            current_uses=0,
            is_active=True,
            created_at=now,
        )
        .returning(promo_codes)
    )
    try:
        result = await session.execute(stmt)
    except IntegrityError as exc:
        raise Conflict(f"promo code {code!r} already exists") from exc
    return _as_dict(result.mappings().one())


async def set_promo_active(session: AsyncSession, code: str, active: bool) -> Optional[dict[str, Any]]:
    stmt = (
        update(promo_codes)
        .where(promo_codes.c.code == code)
        .values(is_active=active)
        .returning(promo_codes)
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


async def has_promo_usage(session: AsyncSession, code: str, account_id: int) -> bool:
    stmt = (
        select(promo_usages.c.id)
        .where(promo_usages.c.code == code)
        .where(promo_usages.c.account_id == account_id)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def insert_promo_usage(session: AsyncSession, code: str, account_id: int, *, now: datetime) -> None:
    try:
        await session.execute(insert(promo_usages).values(code=code, account_id=account_id, used_at=now))
    except IntegrityError as exc:
        raise Conflict(f"promo code {code!r} was already used by account {account_id}") from exc


async def increment_promo_uses(session: AsyncSession, code: str) -> Optional[dict[str, Any]]:
    stmt = (
        update(promo_codes)
        .where(promo_codes.c.code == code)
        .where(promo_codes.c.is_active.is_(True))
        .where(promo_codes.c.current_uses < promo_codes.c.max_uses)
        .values(current_uses=promo_codes.c.current_uses + 1)
        .returning(promo_codes)
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


async def count_promo_usages(session: AsyncSession, code: str, *, account_id: Optional[int] = None) -> int:
    stmt = select(func.count()).select_from(promo_usages).where(promo_usages.c.code == code)
    if account_id is not None:
        stmt = stmt.where(promo_usages.c.account_id == account_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())


# limit overrides


async def get_override(session: AsyncSession, account_id: int, *, for_update: bool = False) -> Optional[dict[str, Any]]:
    stmt = select(limit_overrides).where(limit_overrides.c.account_id == account_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    row = result.mappings().first()
    return _as_dict(row) if row else None


async def insert_override(
    session: AsyncSession,
    account_id: int,
    *,
    original_limit: int,
    restore_at: datetime,
    now: datetime,
) -> dict[str, Any]:
    stmt = (
        insert(limit_overrides)
        .values(account_id=account_id, original_limit=original_limit, restore_at=restore_at, created_at=now)
        .returning(limit_overrides)
    )
    try:
        result = await session.execute(stmt)
    except IntegrityError as exc:
        raise Conflict(f"account {account_id} already has a pending limit override") from exc
    return _as_dict(result.mappings().one())


async def set_override_limit(session: AsyncSession, account_id: int, original_limit: int) -> None:
    await session.execute(
        update(limit_overrides)
        .where(limit_overrides.c.account_id == account_id)
        .values(original_limit=original_limit)
    )


async def delete_override(session: AsyncSession, account_id: int) -> bool:
    stmt = (
        delete(limit_overrides)
        .where(limit_overrides.c.account_id == account_id)
        .returning(limit_overrides.c.account_id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def list_overrides(session: AsyncSession) -> list[dict[str, Any]]:
    stmt = select(limit_overrides).order_by(limit_overrides.c.restore_at, limit_overrides.c.account_id)
    result = await session.execute(stmt)
    return [_as_dict(row) for row in result.mappings().all()]


__all__ = [
    "metadata",
    "Status",
    "entitlements",
    "promo_codes",
    "promo_usages",
    "limit_overrides",
    "build_engine",
    "build_sessionmaker",
    "transaction",
    "init_db",
    "get_entitlement",
    "list_entitlements",
    "insert_entitlement",
    "update_entitlement",
    "advance_status",
    "lock_expired",
    "set_status_bulk",
    "select_auto_renew_due",
    "record_renew_attempt",
    "touch_entitlement",
    "attach_referrer",
    "list_referrals",
    "increment_payed_refs",
    "get_promo",
    "list_promos",
    "insert_promo",
    "set_promo_active",
    "has_promo_usage",
    "insert_promo_usage",
    "increment_promo_uses",
    "count_promo_usages",
    "get_override",
    "insert_override",
    "set_override_limit",
    "delete_override",
    "list_overrides",
]
