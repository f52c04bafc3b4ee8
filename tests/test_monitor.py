"""Tests for the confirmation monitor."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from creditsync.deposits.monitor import ConfirmationMonitor
from creditsync.deposits.settlement import SettlementProcessor
from creditsync.ledger.models import DepositStatus
from creditsync.ledger.repository import LedgerRepository

from conftest import insert_deposit, tx_hash


def receipt(block=100, status="0x1", confirmations=12):
    return {"blockNumber": hex(block), "status": status, "confirmations": confirmations}


@pytest.fixture
def settlement():
    return AsyncMock(spec=SettlementProcessor)


@pytest.fixture
def monitor(rpc, settlement, oracle, alerts, tasks, session_factory):
    return ConfirmationMonitor(
        rpc,
        settlement,
        oracle,
        alerts,
        tasks,
        session_factory,
        confirmations_required=12,
        confirmation_timeout=600,
        min_deposit_usd=Decimal("5.00"),
    )


async def _get(session_factory, tx):
    async with session_factory() as session:
        return await LedgerRepository(session).get_deposit_by_txid(tx)


class TestUnconfirmed:
    """Tests for unconfirmed records."""

    @pytest.mark.asyncio
    async def test_confirms_and_dispatches_settlement(
        self, monitor, rpc, settlement, tasks, user, session_factory
    ):
        await insert_deposit(session_factory, user.id, tx_hash(1))
        rpc.wait_for_confirmations.return_value = receipt(block=104)

        await monitor.tick()
        await tasks.wait()

        deposit = await _get(session_factory, tx_hash(1))
        assert deposit.status == DepositStatus.CONFIRMED
        assert deposit.block_number == 104
        assert deposit.confirmed_at is not None
        rpc.wait_for_confirmations.assert_awaited_once_with(tx_hash(1), 12, 600)
        settlement.settle.assert_awaited_once_with(tx_hash(1))

    @pytest.mark.asyncio
    async def test_timeout_marks_failed(self, monitor, rpc, settlement, alerts, user, session_factory):
        await insert_deposit(session_factory, user.id, tx_hash(1))
        rpc.wait_for_confirmations.return_value = None

        await monitor.tick()

        deposit = await _get(session_factory, tx_hash(1))
        assert deposit.status == DepositStatus.FAILED
        assert deposit.error == "Confirmation timeout after 600s or transaction not found"
        assert alerts.alert.call_args.args[0] == "Deposit Confirmation Timeout"
        settlement.settle.assert_not_called()

    @pytest.mark.asyncio
    async def test_reverted_marks_failed(self, monitor, rpc, settlement, user, session_factory):
        await insert_deposit(session_factory, user.id, tx_hash(1))
        rpc.wait_for_confirmations.return_value = receipt(status="0x0")

        await monitor.tick()

        deposit = await _get(session_factory, tx_hash(1))
        assert deposit.status == DepositStatus.FAILED
        assert deposit.error == "transaction reverted"
        settlement.settle.assert_not_called()

    @pytest.mark.asyncio
    async def test_rpc_error_leaves_record_open(self, monitor, rpc, user, session_factory):
        await insert_deposit(session_factory, user.id, tx_hash(1))
        rpc.wait_for_confirmations.side_effect = RuntimeError("node down")

        await monitor.tick()

        deposit = await _get(session_factory, tx_hash(1))
        assert deposit.status == DepositStatus.UNCONFIRMED

    @pytest.mark.asyncio
    async def test_slow_record_does_not_block_others(
        self, monitor, rpc, settlement, tasks, user, session_factory
    ):
        """A record waiting on depth neither delays other records nor gets re-checked."""
        await insert_deposit(session_factory, user.id, tx_hash(1))
        await insert_deposit(session_factory, user.id, tx_hash(2))
        release = asyncio.Event()

        async def wait_for_confirmations(tx, depth, timeout):
            if tx == tx_hash(1):
                await release.wait()
                return None
            return receipt()

        rpc.wait_for_confirmations.side_effect = wait_for_confirmations

        first_tick = asyncio.create_task(monitor.tick())
        for _ in range(200):
            if (await _get(session_factory, tx_hash(2))).status == DepositStatus.CONFIRMED:
                break
            await asyncio.sleep(0.01)

        assert (await _get(session_factory, tx_hash(2))).status == DepositStatus.CONFIRMED
        assert not first_tick.done()

        await monitor.tick()
        calls = [c.args[0] for c in rpc.wait_for_confirmations.await_args_list]
        assert calls.count(tx_hash(1)) == 1

        release.set()
        await first_tick
        await tasks.wait()

        assert (await _get(session_factory, tx_hash(1))).status == DepositStatus.FAILED
        settlement.settle.assert_any_await(tx_hash(2))

    @pytest.mark.asyncio
    async def test_overlapping_tick_skips_record_in_flight(
        self, monitor, rpc, user, session_factory
    ):
        """A second tick never starts another confirmation wait for the same record."""
        await insert_deposit(session_factory, user.id, tx_hash(1))
        release = asyncio.Event()

        async def wait_for_confirmations(tx, depth, timeout):
            await release.wait()
            return receipt()

        rpc.wait_for_confirmations.side_effect = wait_for_confirmations

        first_tick = asyncio.create_task(monitor.tick())
        for _ in range(200):
            if rpc.wait_for_confirmations.await_count:
                break
            await asyncio.sleep(0.01)
        assert monitor.in_flight == frozenset({tx_hash(1)})

        await asyncio.gather(monitor.tick(), monitor.tick())
        assert rpc.wait_for_confirmations.await_count == 1

        release.set()
        await first_tick

        assert monitor.in_flight == frozenset()
        assert (await _get(session_factory, tx_hash(1))).status == DepositStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_concurrent_ticks_claim_record_once(self, monitor, rpc, user, session_factory):
        await insert_deposit(session_factory, user.id, tx_hash(1))
        release = asyncio.Event()

        async def wait_for_confirmations(tx, depth, timeout):
            await release.wait()
            return receipt()

        rpc.wait_for_confirmations.side_effect = wait_for_confirmations

        ticks = [asyncio.create_task(monitor.tick()) for _ in range(3)]
        for _ in range(200):
            if rpc.wait_for_confirmations.await_count:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        release.set()
        await asyncio.gather(*ticks)

        assert rpc.wait_for_confirmations.await_count == 1


class TestConfirmed:
    @pytest.mark.asyncio
    async def test_confirmed_record_redispatched(
        self, monitor, rpc, settlement, tasks, user, session_factory
    ):
        await insert_deposit(session_factory, user.id, tx_hash(1), DepositStatus.CONFIRMED)

        await monitor.tick()
        await tasks.wait()

        rpc.wait_for_confirmations.assert_not_called()
        settlement.settle.assert_awaited_once_with(tx_hash(1))

    @pytest.mark.asyncio
    async def test_terminal_records_ignored(self, monitor, rpc, settlement, tasks, user, session_factory):
        await insert_deposit(session_factory, user.id, tx_hash(1), DepositStatus.CREDITED)
        await insert_deposit(session_factory, user.id, tx_hash(2), DepositStatus.FAILED)

        await monitor.tick()
        await tasks.wait()

        rpc.wait_for_confirmations.assert_not_called()
        settlement.settle.assert_not_called()


class TestRevaluation:
    """Tests for pending_valuation records."""

    @pytest.mark.asyncio
    async def test_priced_record_moves_to_unconfirmed(self, monitor, user, session_factory):
        await insert_deposit(
            session_factory, user.id, tx_hash(1), DepositStatus.PENDING_VALUATION,
            usd_value=Decimal("0"),
        )

        await monitor.tick()

        deposit = await _get(session_factory, tx_hash(1))
        assert deposit.status == DepositStatus.UNCONFIRMED
        assert deposit.usd_value == Decimal("30.00")
        assert deposit.error is None

    @pytest.mark.asyncio
    async def test_below_minimum_fails(self, monitor, user, session_factory, prices):
        prices["ethereum"] = 200.0
        await insert_deposit(
            session_factory, user.id, tx_hash(1), DepositStatus.PENDING_VALUATION,
            usd_value=Decimal("0"),
        )

        await monitor.tick()

        deposit = await _get(session_factory, tx_hash(1))
        assert deposit.status == DepositStatus.FAILED
        assert deposit.usd_value == Decimal("2.00")
        assert "Below minimum" in deposit.error

    @pytest.mark.asyncio
    async def test_still_unpriced_stays(self, monitor, user, session_factory, prices):
        prices["ethereum"] = None
        await insert_deposit(
            session_factory, user.id, tx_hash(1), DepositStatus.PENDING_VALUATION,
            usd_value=Decimal("0"),
        )

        await monitor.tick()

        deposit = await _get(session_factory, tx_hash(1))
        assert deposit.status == DepositStatus.PENDING_VALUATION
