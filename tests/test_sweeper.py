"""
Tests for the ACTIVE -> GRACE -> INACTIVE sweeps.
"""

from datetime import timedelta

import pytest

from gatekeeper.core.db import Status
from gatekeeper.core.errors import UpstreamError, ValidationError

from conftest import NOW, activate


async def test_grace_moves_only_rows_inside_horizon(services):
    await activate(services, 1, days=3)
    await activate(services, 2, days=10)
    at = NOW + timedelta(days=2, hours=12)

    moved = await services.sweeper.advance_to_grace(1, now=at)

    assert moved == [1]
    assert (await services.entitlements.get(1)).status is Status.GRACE
    assert (await services.entitlements.get(2)).status is Status.ACTIVE


async def test_grace_is_idempotent(services):
    await activate(services, 3, days=3)
    at = NOW + timedelta(days=2, hours=12)

    first = await services.sweeper.advance_to_grace(1, now=at)
    second = await services.sweeper.advance_to_grace(1, now=at)

    assert first == [3]
    assert second == []


async def test_grace_ignores_inactive_rows(services):
    await services.entitlements.register(4, now=NOW)

    assert await services.sweeper.advance_to_grace(1, now=NOW - timedelta(hours=1)) == []


@pytest.mark.parametrize("days", [0, -3])
async def test_grace_rejects_non_positive_horizon(services, days):
    with pytest.raises(ValidationError):
        await services.sweeper.advance_to_grace(days, now=NOW)


async def test_inactive_revokes_expired_grace_rows(services, panel):
    await activate(services, 5, days=3)
    await activate(services, 6, days=3)
    await services.sweeper.advance_to_grace(1, now=NOW + timedelta(days=2, hours=12))

    revoked = await services.sweeper.advance_to_inactive(now=NOW + timedelta(days=3, hours=1))

    assert revoked == [5, 6]
    assert panel.revoked == ["uuid-5", "uuid-6"]
    assert (await services.entitlements.get(5)).status is Status.INACTIVE


async def test_inactive_skips_grace_rows_not_yet_expired(services, panel):
    await activate(services, 7, days=3)
    await services.sweeper.advance_to_grace(1, now=NOW + timedelta(days=2, hours=12))

    assert await services.sweeper.advance_to_inactive(now=NOW + timedelta(days=2, hours=13)) == []
    assert panel.revoked == []


async def test_inactive_rolls_back_whole_batch_on_panel_failure(services, panel):
    await activate(services, 8, days=3)
    await activate(services, 9, days=3)
    await services.sweeper.advance_to_grace(1, now=NOW + timedelta(days=2, hours=12))
    panel.fail = True

    with pytest.raises(UpstreamError):
        await services.sweeper.advance_to_inactive(now=NOW + timedelta(days=4))

    assert (await services.entitlements.get(8)).status is Status.GRACE
    assert (await services.entitlements.get(9)).status is Status.GRACE

    panel.fail = False
    assert await services.sweeper.advance_to_inactive(now=NOW + timedelta(days=4)) == [8, 9]


async def test_extend_rescues_grace_account(services):
    await activate(services, 10, days=3)
    await services.sweeper.advance_to_grace(1, now=NOW + timedelta(days=2, hours=12))

    ent = await services.entitlements.extend(10, 30, "base", now=NOW + timedelta(days=2, hours=13))

    assert ent.status is Status.ACTIVE
    assert await services.sweeper.advance_to_inactive(now=NOW + timedelta(days=4)) == []
