#!/usr/bin/env python3

import asyncio
from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest

from betapp.entities import TransactionType
from betapp.exceptions import InsufficientFundsError
from betapp.ledger import RedisLedger


@pytest.mark.asyncio
async def test_new_account_gets_starting_balance_and_init_row(ledger, transaction_store):
    assert await ledger.get_balance("u1") == 1000

    history = await transaction_store.list_by_user("u1", 10)
    assert [(row.type, row.amount) for row in history] == [(TransactionType.INIT, 1000)]


@pytest.mark.asyncio
async def test_adjust_credits_debits_and_audits(ledger):
    assert await ledger.adjust("u1", -250, TransactionType.BET, 7) == 750
    assert await ledger.adjust("u1", 500, TransactionType.PAYOUT, 7) == 1250

    history = await ledger.get_transaction_history("u1", 10)
    assert [(row.type, row.amount, row.reference_id) for row in history[:2]] == [
        (TransactionType.PAYOUT, 500, 7),
        (TransactionType.BET, -250, 7),
    ]


@pytest.mark.asyncio
async def test_debit_beyond_balance_raises_and_leaves_balance(ledger):
    with pytest.raises(InsufficientFundsError) as excinfo:
        await ledger.adjust("u1", -1001, TransactionType.BET)

    assert excinfo.value.balance == 1000
    assert await ledger.get_balance("u1") == 1000


@pytest.mark.asyncio
async def test_debit_without_lua_falls_back_to_plain_commands():
    kv = fakeredis.aioredis.FakeRedis()
    ledger = RedisLedger(kv)

    async def raise_module_not_found(*args, **kwargs):
        raise ModuleNotFoundError("lupa")

    ledger._lua_decr_if_ge = raise_module_not_found

    assert await ledger.adjust("u1", -100, TransactionType.BET) == 900
    with pytest.raises(InsufficientFundsError):
        await ledger.adjust("u1", -901, TransactionType.BET)
    assert await ledger.get_balance("u1") == 900


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(ledger):
    results = await asyncio.gather(
        *(ledger.adjust("u1", -300, TransactionType.BET) for _ in range(5)),
        return_exceptions=True,
    )

    failures = [result for result in results if isinstance(result, InsufficientFundsError)]
    assert len(failures) == 2
    assert await ledger.get_balance("u1") == 100


@pytest.mark.asyncio
async def test_audit_failure_does_not_fail_the_adjustment(redis_client):
    transactions = AsyncMock()
    transactions.record.side_effect = RuntimeError("database down")
    ledger = RedisLedger(redis_client, transactions=transactions)

    assert await ledger.adjust("u1", 50, TransactionType.PAYOUT) == 1050
    assert transactions.record.await_count == 2


@pytest.mark.asyncio
async def test_donate_moves_funds_between_users(ledger):
    sender, recipient = await ledger.donate("u1", "u2", 200)

    assert (sender, recipient) == (800, 1200)
    with pytest.raises(ValueError):
        await ledger.donate("u1", "u1", 10)
    with pytest.raises(ValueError):
        await ledger.donate("u1", "u2", 0)
    with pytest.raises(InsufficientFundsError):
        await ledger.donate("u1", "u2", 5000)
    assert await ledger.get_balance("u1") == 800


@pytest.mark.asyncio
async def test_set_balance_audits_difference(ledger, transaction_store):
    assert await ledger.set_balance("u1", 300) == 300

    rows = await transaction_store.list_by_user("u1", 10)
    assert sorted(row.amount for row in rows) == [-700, 1000]
    with pytest.raises(ValueError):
        await ledger.set_balance("u1", -1)


@pytest.mark.asyncio
async def test_leaderboard_orders_by_balance_with_names(ledger):
    await ledger.ensure_account("u1", "Ann")
    await ledger.ensure_account("u2", "Bob")
    await ledger.adjust("u2", 500, TransactionType.PAYOUT)
    await ledger.adjust("u3", -100, TransactionType.BET)

    board = await ledger.get_leaderboard(2)

    assert [(entry.display_name, entry.balance) for entry in board] == [
        ("Bob", 1500),
        ("Ann", 1000),
    ]
    assert (await ledger.get_leaderboard(5))[-1].display_name == "u3"
    assert await ledger.get_leaderboard(0) == []
