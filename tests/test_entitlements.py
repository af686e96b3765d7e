"""
Tests for registration, extension and the flag writers.
"""

from datetime import timedelta

import pytest

from gatekeeper.core import db as dal
from gatekeeper.core.db import Status
from gatekeeper.core.errors import Conflict, NotFound, UpstreamError, ValidationError
from gatekeeper.domain.entitlements.service import next_subscription_end
from gatekeeper.domain.plans import GIB, Plan

from conftest import NOW, activate


# =============================================================================
# Register
# =============================================================================


class TestRegister:
    async def test_creates_inactive_free_entitlement(self, services, panel):
        ent = await services.entitlements.register(101, now=NOW)

        assert ent.account_id == 101
        assert ent.external_key == "uuid-101"
        assert ent.status is Status.INACTIVE
        assert ent.plan == "free"
        assert ent.device_limit == 1
        assert ent.subscription_end == NOW
        assert panel.created[0]["limits"].traffic_limit_bytes == 5 * GIB

    async def test_explicit_plan_sets_device_limit(self, services):
        ent = await services.entitlements.register(102, "Family", now=NOW)

        assert ent.plan == "family"
        assert ent.device_limit == 6

    async def test_duplicate_registration_is_conflict_without_panel_call(self, services, panel):
        await services.entitlements.register(103, now=NOW)

        with pytest.raises(Conflict):
            await services.entitlements.register(103, now=NOW)
        assert len(panel.created) == 1

    async def test_unknown_plan_is_validation_error(self, services, panel):
        with pytest.raises(ValidationError):
            await services.entitlements.register(104, "platinum", now=NOW)
        assert panel.created == []

    async def test_panel_failure_leaves_no_row(self, services, panel):
        panel.fail = True

        with pytest.raises(UpstreamError):
            await services.entitlements.register(105, now=NOW)

        with pytest.raises(NotFound):
            await services.entitlements.get(105)

    async def test_local_conflict_revokes_orphaned_panel_user(self, services, panel):
        panel.keys[107] = "shared-key"
        panel.keys[108] = "shared-key"
        await services.entitlements.register(107, now=NOW)

        with pytest.raises(Conflict):
            await services.entitlements.register(108, now=NOW)
        assert panel.revoked == ["shared-key"]


# =============================================================================
# Extend
# =============================================================================


class TestExtend:
    async def test_trial_extensions_stack(self, services, panel):
        await services.entitlements.register(201, now=NOW)

        first = await services.entitlements.extend(201, 3, "trial", now=NOW)
        second = await services.entitlements.extend(201, 3, "trial", now=NOW + timedelta(hours=1))

        assert first.subscription_end == NOW + timedelta(days=3)
        assert second.subscription_end == NOW + timedelta(days=6)
        assert second.status is Status.ACTIVE
        assert panel.last_update["status"] == "ACTIVE"
        assert panel.last_update["tag"] == "TRIAL"

    async def test_plan_change_restarts_period(self, services):
        await activate(services, 202, days=30, plan="base")

        changed = await services.entitlements.extend(202, 30, "family", now=NOW + timedelta(days=10))

        assert changed.subscription_end == NOW + timedelta(days=40)
        assert changed.plan == "family"
        assert changed.device_limit == 6

    async def test_same_plan_stacks_on_future_end(self, services):
        await activate(services, 203, days=30, plan="base")

        renewed = await services.entitlements.extend(203, 30, "base", now=NOW + timedelta(days=10))

        assert renewed.subscription_end == NOW + timedelta(days=60)

    async def test_lapsed_period_restarts_from_now(self, services):
        await activate(services, 204, days=5, plan="base")
        later = NOW + timedelta(days=20)

        renewed = await services.entitlements.extend(204, 30, "base", now=later)

        assert renewed.subscription_end == later + timedelta(days=30)

    async def test_introductory_plan_never_restarts(self, services):
        await activate(services, 205, days=30, plan="base")

        ent = await services.entitlements.extend(205, 3, "trial", now=NOW)

        assert ent.subscription_end == NOW + timedelta(days=33)

    async def test_bypass_plan_pushes_extra_squad(self, services, panel):
        await activate(services, 206, days=30, plan="bsfamily")

        assert panel.last_update["squads"] == ("default", "bypass")
        assert panel.last_update["limits"].device_limit == 6
        assert panel.last_update["limits"].traffic_limit_bytes == 0

    @pytest.mark.parametrize("days", [0, -1, True])
    async def test_non_positive_days_rejected(self, services, days):
        await services.entitlements.register(207, now=NOW)

        with pytest.raises(ValidationError):
            await services.entitlements.extend(207, days, "base", now=NOW)

    async def test_missing_account_is_not_found(self, services):
        with pytest.raises(NotFound):
            await services.entitlements.extend(999, 30, "base", now=NOW)

    async def test_panel_failure_keeps_stored_state(self, services, panel):
        await services.entitlements.register(208, now=NOW)
        panel.fail = True

        with pytest.raises(UpstreamError):
            await services.entitlements.extend(208, 30, "base", now=NOW)

        ent = await services.entitlements.get(208)
        assert ent.status is Status.INACTIVE
        assert ent.plan == "free"

    async def test_reactivates_inactive_account(self, services, sessions):
        await activate(services, 209, days=30)
        async with dal.transaction(sessions) as session:
            await dal.update_entitlement(session, 209, {"status": int(Status.INACTIVE)}, now=NOW)

        ent = await services.entitlements.extend(209, 30, "base", now=NOW)

        assert ent.status is Status.ACTIVE


def test_next_subscription_end_plan_change_from_free_to_trial_stacks():
    end = next_subscription_end("free", NOW + timedelta(days=2), Plan.TRIAL, 3, NOW)
    assert end == NOW + timedelta(days=5)


# =============================================================================
# Flags and reads
# =============================================================================


class TestFlags:
    async def test_trial_and_ref_bonus_flags(self, services):
        await services.entitlements.register(301, now=NOW)

        ent = await services.entitlements.set_trial_used(301, True)
        assert ent.is_used_trial is True
        ent = await services.entitlements.set_ref_bonus_used(301, True)
        assert ent.is_used_ref_bonus is True
        ent = await services.entitlements.set_trial_used(301, False)
        assert ent.is_used_trial is False

    async def test_set_pro(self, services):
        await services.entitlements.register(302, now=NOW)

        ent = await services.entitlements.set_pro(302, True)

        assert ent.is_pro is True

    async def test_flags_on_missing_account(self, services):
        with pytest.raises(NotFound):
            await services.entitlements.set_trial_used(999, True)

    async def test_clearing_payment_method_disables_auto_renew(self, services):
        await activate(services, 303)
        await services.entitlements.set_payment_method(303, "pm_1")
        await services.renewals.toggle(303, True, plan="base", duration=30, now=NOW)

        ent = await services.entitlements.set_payment_method(303, "  ")

        assert ent.payment_method_id is None
        assert ent.auto_renew is False

    async def test_list_is_ordered_and_paged(self, services):
        for account_id in (403, 401, 402):
            await services.entitlements.register(account_id, now=NOW)

        everything = await services.entitlements.list_all()
        page = await services.entitlements.list_all(limit=1, offset=1)

        assert [ent.account_id for ent in everything] == [401, 402, 403]
        assert [ent.account_id for ent in page] == [402]

    async def test_payload_is_json_friendly(self, services):
        ent = await services.entitlements.register(404, now=NOW)

        payload = ent.to_payload()

        assert payload["status"] == "INACTIVE"
        assert payload["subscription_end"] == NOW.isoformat()
        assert payload["auto_renew_last_attempt"] is None
