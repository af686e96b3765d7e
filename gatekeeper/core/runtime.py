from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.config import Cfg
from gatekeeper.domain.entitlements.service import EntitlementService
from gatekeeper.domain.entitlements.sweeper import ExpirySweeper
from gatekeeper.domain.overrides.service import OverrideService
from gatekeeper.domain.promos.service import PromoService
from gatekeeper.domain.provisioning.client import ProvisioningClient
from gatekeeper.domain.referrals.service import ReferralService
from gatekeeper.domain.renewals.service import AutoRenewService


@dataclass
class Services:
    cfg: Cfg
    entitlements: EntitlementService
    sweeper: ExpirySweeper
    renewals: AutoRenewService
    referrals: ReferralService
    promos: PromoService
    overrides: OverrideService


def build_services(
    cfg: Cfg,
    sessions: async_sessionmaker[AsyncSession],
    *,
    scheduler: Optional[AsyncIOScheduler] = None,
    provisioner: Optional[ProvisioningClient] = None,
) -> Services:
    panel = provisioner if provisioner is not None else ProvisioningClient(cfg.provisioning)
    return Services(
        cfg=cfg,
        entitlements=EntitlementService(sessions, panel),
        sweeper=ExpirySweeper(sessions, panel),
        renewals=AutoRenewService(sessions, cfg.auto_renew),
        referrals=ReferralService(sessions),
        promos=PromoService(sessions),
        overrides=OverrideService(sessions, panel, cfg.override, scheduler),
    )


__all__ = ["Services", "build_services"]
