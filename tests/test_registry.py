"""Tests for the address registry."""

from unittest.mock import patch

import pytest

from creditsync.deposits.registry import AddressRegistry
from creditsync.ledger.repository import LedgerRepository

from conftest import OTHER_ADDRESS, USER_ADDRESS


@pytest.mark.asyncio
async def test_refresh_loads_active_addresses(session_factory, user, alerts):
    registry = AddressRegistry(alerts, session_factory)

    assert await registry.refresh() is True
    assert registry.snapshot() == frozenset({USER_ADDRESS})
    assert registry.contains(USER_ADDRESS.upper().replace("0X", "0x"))
    assert not registry.contains(OTHER_ADDRESS)
    assert not registry.contains(None)


@pytest.mark.asyncio
async def test_refresh_reports_unchanged(session_factory, user, alerts):
    registry = AddressRegistry(alerts, session_factory)
    await registry.refresh()

    assert await registry.refresh() is False


@pytest.mark.asyncio
async def test_refresh_swaps_snapshot(session_factory, user, alerts):
    """Readers holding the old snapshot are unaffected by a refresh."""
    registry = AddressRegistry(alerts, session_factory)
    await registry.refresh()
    old = registry.snapshot()

    async with session_factory() as session:
        repo = LedgerRepository(session)
        await repo.add_deposit_address(user.id, OTHER_ADDRESS)
        await session.commit()

    assert await registry.refresh() is True
    assert old == frozenset({USER_ADDRESS})
    assert registry.snapshot() == frozenset({USER_ADDRESS, OTHER_ADDRESS})
    assert registry.snapshot() is not old


@pytest.mark.asyncio
async def test_invalid_addresses_skipped(session_factory, user, alerts):
    async with session_factory() as session:
        repo = LedgerRepository(session)
        await repo.add_deposit_address(user.id, "not-an-address")
        await repo.add_deposit_address(user.id, "0x1234")
        await session.commit()

    registry = AddressRegistry(alerts, session_factory)
    await registry.refresh()

    assert registry.snapshot() == frozenset({USER_ADDRESS})


@pytest.mark.asyncio
async def test_store_failure_keeps_previous_snapshot(session_factory, user, alerts):
    registry = AddressRegistry(alerts, session_factory)
    await registry.refresh()

    with patch.object(
        LedgerRepository, "list_active_addresses", side_effect=RuntimeError("db down")
    ):
        assert await registry.refresh() is False

    assert registry.snapshot() == frozenset({USER_ADDRESS})
    alerts.alert.assert_called_once()


@pytest.mark.asyncio
async def test_empty_store(session_factory, alerts):
    registry = AddressRegistry(alerts, session_factory)

    assert await registry.refresh() is False
    assert len(registry) == 0
