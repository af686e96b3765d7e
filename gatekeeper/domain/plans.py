from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

GIB = 1024 ** 3


class Plan(str, Enum):
    FREE = "free"
    TRIAL = "trial"
    BASE = "base"
    FAMILY = "family"
    BSBASE = "bsbase"
    BSFAMILY = "bsfamily"

    @property
    def spec(self) -> "PlanSpec":
        return PLAN_SPECS[self]

    @property
    def tag(self) -> str:
        return self.value.upper()

    @property
    def is_introductory(self) -> bool:
        return self in INTRODUCTORY_PLANS


@dataclass(frozen=True)
class PlanSpec:
    """Limits pushed to the access panel for a plan."""

    device_limit: int
    traffic_limit_bytes: int  # 0 means unlimited
    squads: tuple[str, ...]


@dataclass(frozen=True)
class Limits:
    device_limit: int
    traffic_limit_bytes: int

    def with_devices(self, device_limit: int) -> "Limits":
        return Limits(device_limit=device_limit, traffic_limit_bytes=self.traffic_limit_bytes)


PLAN_SPECS: dict[Plan, PlanSpec] = {
    Plan.FREE: PlanSpec(device_limit=1, traffic_limit_bytes=5 * GIB, squads=("default",)),
    Plan.TRIAL: PlanSpec(device_limit=1, traffic_limit_bytes=50 * GIB, squads=("default",)),
    Plan.BASE: PlanSpec(device_limit=3, traffic_limit_bytes=0, squads=("default",)),
    Plan.FAMILY: PlanSpec(device_limit=6, traffic_limit_bytes=0, squads=("default",)),
    Plan.BSBASE: PlanSpec(device_limit=3, traffic_limit_bytes=0, squads=("default", "bypass")),
    Plan.BSFAMILY: PlanSpec(device_limit=6, traffic_limit_bytes=0, squads=("default", "bypass")),
}

# Extending into these never restarts the paid period
INTRODUCTORY_PLANS = frozenset([Plan.FREE, Plan.TRIAL])
RENEWABLE_PLANS = frozenset(plan for plan in Plan if plan not in INTRODUCTORY_PLANS)


def parse_plan(value: str) -> Plan:
    """Return the plan for a tag, raising ValueError for unknown tags."""
    normalized = (value or "").strip().lower()
    try:
        return Plan(normalized)
    except ValueError:
        raise ValueError(f"unknown plan '{value}'") from None


def plan_limits(plan: Plan) -> Limits:
    spec = PLAN_SPECS[plan]
    return Limits(device_limit=spec.device_limit, traffic_limit_bytes=spec.traffic_limit_bytes)


__all__ = [
    "GIB",
    "Plan",
    "PlanSpec",
    "Limits",
    "PLAN_SPECS",
    "INTRODUCTORY_PLANS",
    "RENEWABLE_PLANS",
    "parse_plan",
    "plan_limits",
]
