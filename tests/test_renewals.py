"""
Tests for auto-renew selection, the attempt ledger and the toggle.
"""

import pytest

from gatekeeper.core.errors import NotFound, ValidationError

from conftest import NOW, activate, hours


async def _enroll(services, account_id, *, days=3, plan="base"):
    await activate(services, account_id, days=days, plan=plan)
    await services.entitlements.set_payment_method(account_id, f"pm_{account_id}")
    return await services.renewals.toggle(account_id, True, plan=plan, duration=30, now=NOW)


class TestToggle:
    async def test_enable_stores_plan_and_duration(self, services):
        ent = await _enroll(services, 1)

        assert ent.auto_renew is True
        assert ent.auto_renew_plan == "base"
        assert ent.auto_renew_duration == 30
        assert ent.auto_renew_fail_count == 0

    async def test_enable_requires_payment_method(self, services):
        await activate(services, 2)

        with pytest.raises(ValidationError):
            await services.renewals.toggle(2, True, plan="base", duration=30, now=NOW)

    @pytest.mark.parametrize(
        "plan, duration",
        [(None, 30), ("base", None), ("base", 0), ("base", True), ("trial", 30), ("gold", 30)],
    )
    async def test_enable_rejects_bad_parameters(self, services, plan, duration):
        await activate(services, 3)
        await services.entitlements.set_payment_method(3, "pm_3")

        with pytest.raises(ValidationError):
            await services.renewals.toggle(3, True, plan=plan, duration=duration, now=NOW)

    async def test_disable_keeps_renewal_settings(self, services):
        await _enroll(services, 4)

        ent = await services.renewals.toggle(4, False, now=NOW)

        assert ent.auto_renew is False
        assert ent.auto_renew_plan == "base"

    async def test_missing_account(self, services):
        with pytest.raises(NotFound):
            await services.renewals.toggle(999, False, now=NOW)


class TestDue:
    async def test_selects_enrolled_rows_inside_horizon(self, services):
        await _enroll(services, 10, days=3)
        await _enroll(services, 11, days=20)
        await activate(services, 12, days=3)

        due = await services.renewals.list_due(5, now=NOW)

        assert [ent.account_id for ent in due] == [10]

    async def test_cooldown_hides_recent_attempts(self, services):
        await _enroll(services, 13, days=3)
        await services.renewals.record_attempt(13, False, now=NOW)

        assert await services.renewals.list_due(5, now=NOW + hours(1)) == []
        due = await services.renewals.list_due(5, now=NOW + hours(13))
        assert [ent.account_id for ent in due] == [13]

    async def test_rejects_non_positive_horizon(self, services):
        with pytest.raises(ValidationError):
            await services.renewals.list_due(0, now=NOW)


class TestAttempts:
    async def test_breaker_opens_after_max_failures(self, services):
        await _enroll(services, 20, days=5)

        for attempt in range(2):
            ent = await services.renewals.record_attempt(20, False, now=NOW + hours(13 * attempt))
            assert ent.auto_renew is True
        ent = await services.renewals.record_attempt(20, False, now=NOW + hours(26))

        assert ent.auto_renew_fail_count == 3
        assert ent.auto_renew is False
        assert await services.renewals.list_due(5, now=NOW + hours(48)) == []

    async def test_success_resets_failures(self, services):
        await _enroll(services, 21)
        await services.renewals.record_attempt(21, False, now=NOW)

        ent = await services.renewals.record_attempt(21, True, now=NOW + hours(13))

        assert ent.auto_renew_fail_count == 0
        assert ent.auto_renew is True
        assert ent.auto_renew_last_attempt == NOW + hours(13)

    async def test_explicit_toggle_closes_breaker(self, services):
        await _enroll(services, 22, days=5)
        for attempt in range(3):
            await services.renewals.record_attempt(22, False, now=NOW + hours(attempt))

        ent = await services.renewals.toggle(22, True, plan="family", duration=30, now=NOW + hours(4))

        assert ent.auto_renew is True
        assert ent.auto_renew_fail_count == 0
        assert ent.auto_renew_plan == "family"

    async def test_missing_account(self, services):
        with pytest.raises(NotFound):
            await services.renewals.record_attempt(999, True, now=NOW)
