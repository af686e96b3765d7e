"""
Shared fixtures: a file-backed SQLite database, a recording panel stand-in
and a fully wired service container.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from gatekeeper.config import (
    AutoRenewConfig,
    Cfg,
    HttpConfig,
    OverrideConfig,
    PostgresCfg,
    ProvisioningConfig,
    SweepConfig,
)
from gatekeeper.core import db as dal
from gatekeeper.core.errors import UpstreamError
from gatekeeper.core.runtime import build_services
from gatekeeper.core.scheduler import build_scheduler
from gatekeeper.domain.plans import Limits

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeProvisioner:
    """Records every panel call; set ``fail`` to make all calls raise UpstreamError."""

    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.updates: list[dict[str, Any]] = []
        self.revoked: list[str] = []
        self.keys: dict[int, str] = {}
        self.fail = False

    def _check(self, op: str) -> None:
        if self.fail:
            raise UpstreamError(f"panel {op} unavailable", status=503)

    async def create(self, account_id: int, limits: Limits, *, expire_at: datetime) -> str:
        self._check("create")
        self.created.append({"account_id": account_id, "limits": limits, "expire_at": expire_at})
        return self.keys.get(account_id, f"uuid-{account_id}")

    async def update(self, external_key, *, status, limits, expire_at, tag, squads) -> None:
        self._check("update")
        self.updates.append(
            {
                "external_key": external_key,
                "status": status,
                "limits": limits,
                "expire_at": expire_at,
                "tag": tag,
                "squads": tuple(squads),
            }
        )

    async def revoke(self, external_key: str) -> None:
        self._check("revoke")
        self.revoked.append(external_key)

    @property
    def last_update(self) -> Optional[dict[str, Any]]:
        return self.updates[-1] if self.updates else None


@pytest.fixture
def cfg(tmp_path) -> Cfg:
    return Cfg(
        pg=PostgresCfg(
            url=f"sqlite+aiosqlite:///{tmp_path / 'gatekeeper.db'}",
            run_migrations=False,
            dev_create_all=True,
        ),
        provisioning=ProvisioningConfig(base_url="http://panel.test", token="test-token"),
        http=HttpConfig(host="127.0.0.1", port=8080),
        sweep=SweepConfig(interval_minutes=60, grace_horizon_days=1),
        auto_renew=AutoRenewConfig(cooldown_hours=12, max_failures=3),
        override=OverrideConfig(delay_minutes=30),
    )


@pytest.fixture
async def engine(cfg):
    engine = dal.build_engine(cfg.pg)
    await dal.init_db(engine, cfg.pg)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine):
    return dal.build_sessionmaker(engine)


@pytest.fixture
def panel() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def scheduler():
    return build_scheduler()


@pytest.fixture
def services(cfg, sessions, panel, scheduler):
    return build_services(cfg, sessions, scheduler=scheduler, provisioner=panel)


async def activate(services, account_id: int, *, days: int = 30, plan: str = "base", now: datetime = NOW):
    """Register an account and put it on a paid period."""
    await services.entitlements.register(account_id, now=now)
    return await services.entitlements.extend(account_id, days, plan, now=now)


def hours(n: float) -> timedelta:
    return timedelta(hours=n)
