"""
EntitySyncWorker against the fake Mercury API and a real SQLite store.
"""
from datetime import date

import pytest
from pydantic import SecretStr
from sqlalchemy import func, select

from portal.models.account import BalanceSnapshot, BankTransaction
from portal.services.credentials import CredentialRegistry
from portal.services.entity_sync import EntitySyncWorker, OutcomeStatus, cycle_start
from portal.services.mercury_client import MercuryClient, RateLimitedClient
from portal.services.rate_limit import RetryPolicy
from portal.services.store import TransactionFilter

from conftest import ENTITIES, MERCURY_BASE, TOKENS, utc

CYCLE = utc(2026, 2, 3, 12, 0)


@pytest.fixture
def worker(mercury, store, vclock):
    keys = {k: SecretStr(v) for k, v in TOKENS.items() if k != "charlie"}
    registry = CredentialRegistry.from_entities(ENTITIES, keys)
    transport = RateLimitedClient(
        MERCURY_BASE,
        transport=mercury.transport(),
        policy=RetryPolicy(max_attempts=3, base_delay=0.0, jitter_ratio=0.0),
        clock=vclock,
        sleep=vclock.sleep,
    )
    return EntitySyncWorker(registry, MercuryClient(transport), store)


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestCycleStart:
    def test_floors_to_cycle(self):
        assert cycle_start(utc(2026, 2, 3, 12, 4, 59), 300) == utc(2026, 2, 3, 12, 0)

    def test_zero_cycle_keeps_time(self):
        now = utc(2026, 2, 3, 12, 4, 59)
        assert cycle_start(now, 0) == now


class TestSuccess:
    async def test_accounts_balances_and_transactions(self, worker, mercury, session_factory):
        token = TOKENS["alpha"]
        mercury.add_account(token, "acc-1", balance="2500.00", name="Operating")
        mercury.add_account(token, "acc-2", balance="10.05", name="Reserve")
        mercury.add_transaction("acc-1", "tx-1", amount="-42.10")
        mercury.add_transaction("acc-1", "tx-2", amount="1000.00")

        outcome = await worker.sync_entity("alpha", CYCLE)

        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.accounts_synced == 2
        assert outcome.transactions_added == 2
        assert outcome.snapshots_written == 2
        assert sorted(outcome.balances) == [("Operating", 250_000), ("Reserve", 1_005)]
        assert await count(session_factory, BankTransaction) == 2

    async def test_rerun_in_same_cycle_writes_nothing_new(self, worker, mercury, session_factory):
        mercury.add_account(TOKENS["alpha"], "acc-1")
        mercury.add_transaction("acc-1", "tx-1")

        await worker.sync_entity("alpha", CYCLE)
        mercury.set_balance("acc-1", "999.99")
        again = await worker.sync_entity("alpha", CYCLE)

        assert again.status is OutcomeStatus.SUCCESS
        assert again.snapshots_written == 0
        assert again.transactions_added == 0
        assert await count(session_factory, BalanceSnapshot) == 1
        assert await count(session_factory, BankTransaction) == 1

    async def test_next_cycle_appends_snapshot(self, worker, mercury, session_factory):
        mercury.add_account(TOKENS["alpha"], "acc-1")
        await worker.sync_entity("alpha", CYCLE)
        mercury.set_balance("acc-1", "1.00")
        outcome = await worker.sync_entity("alpha", utc(2026, 2, 3, 12, 5))
        assert outcome.snapshots_written == 1
        assert await count(session_factory, BalanceSnapshot) == 2


class TestIncremental:
    async def test_fetch_starts_at_last_transaction_date(self, worker, mercury, store):
        mercury.add_account(TOKENS["alpha"], "acc-1")
        mercury.add_transaction("acc-1", "tx-0", when="2026-02-01T09:30:00Z")
        await worker.sync_entity("alpha", CYCLE)

        # The fake ignores the start date, so older entries come back too
        mercury.add_transaction("acc-1", "old-1", when="2026-01-20T10:00:00Z")
        mercury.add_transaction("acc-1", "old-2", when="2026-01-25T10:00:00Z")
        mercury.add_transaction("acc-1", "new-1", when="2026-02-02T10:00:00Z")
        mercury.add_transaction("acc-1", "new-2", when="2026-02-03T08:00:00Z")
        mercury.add_transaction("acc-1", "new-3", when="2026-02-03T09:00:00Z")

        outcome = await worker.sync_entity("alpha", utc(2026, 2, 3, 12, 5))

        second_fetch = mercury.calls("/account/acc-1/transactions")[-1]
        assert second_fetch.url.params["start"] == "2026-02-01"
        assert outcome.transactions_added == 3
        page = await store.read_transactions(TransactionFilter(entity_id="alpha"))
        assert sorted(t.external_id for t in page.items) == ["new-1", "new-2", "new-3", "tx-0"]

    async def test_first_fetch_has_no_start(self, worker, mercury):
        mercury.add_account(TOKENS["alpha"], "acc-1")
        await worker.sync_entity("alpha", CYCLE)
        assert "start" not in mercury.calls("/account/acc-1/transactions")[0].url.params

    async def test_pending_settles_on_later_sync(self, worker, mercury, store):
        mercury.add_account(TOKENS["alpha"], "acc-1")
        tx = mercury.add_transaction("acc-1", "tx-1", status="pending", when="2026-02-01T09:00:00Z")
        await worker.sync_entity("alpha", CYCLE)

        tx["status"] = "sent"
        tx["postedAt"] = "2026-02-01T09:00:00Z"
        outcome = await worker.sync_entity("alpha", utc(2026, 2, 3, 12, 5))

        assert outcome.transactions_added == 0
        page = await store.read_transactions(TransactionFilter(entity_id="alpha"))
        assert [t.status for t in page.items] == ["posted"]


class TestFailures:
    async def test_missing_credential_is_skipped(self, worker, mercury):
        outcome = await worker.sync_entity("charlie", CYCLE)
        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.reason == "MISSING_CREDENTIAL"
        assert mercury.requests == []

    async def test_account_list_failure_fails_entity(self, worker, mercury):
        mercury.add_account(TOKENS["alpha"], "acc-1")
        mercury.fail_path("/accounts", 403)
        outcome = await worker.sync_entity("alpha", CYCLE)
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.reason == "CLIENT_REQUEST_ERROR"

    async def test_one_account_failing_is_partial(self, worker, mercury, session_factory):
        token = TOKENS["bravo"]
        mercury.add_account(token, "acc-b1")
        mercury.add_account(token, "acc-b2")
        mercury.add_transaction("acc-b1", "tx-1")
        mercury.add_transaction("acc-b2", "tx-2")
        mercury.fail_path("/account/acc-b2", 500)

        outcome = await worker.sync_entity("bravo", CYCLE)

        assert outcome.status is OutcomeStatus.PARTIAL_FAILURE
        assert outcome.succeeded_accounts == ["acc-b1"]
        assert outcome.failed_accounts == ["acc-b2"]
        assert "TRANSIENT_NETWORK_ERROR" in outcome.reasons["acc-b2"]
        # The failing account's transactions still landed
        assert outcome.synced
        assert await count(session_factory, BankTransaction) == 2
        assert await count(session_factory, BalanceSnapshot) == 1

    async def test_every_account_failing_fails_entity(self, worker, mercury):
        mercury.add_account(TOKENS["alpha"], "acc-1")
        mercury.fail_path("/account/acc-1", 404)
        mercury.fail_path("/transactions", 404)
        outcome = await worker.sync_entity("alpha", CYCLE)
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.failed_accounts == ["acc-1"]

    async def test_account_owned_by_other_entity_is_not_written(self, worker, mercury, session_factory):
        shared = mercury.add_account(TOKENS["alpha"], "acc-1")
        mercury.accounts[TOKENS["bravo"]] = [shared]
        mercury.add_transaction("acc-1", "tx-1")
        assert (await worker.sync_entity("alpha", CYCLE)).status is OutcomeStatus.SUCCESS

        mercury.add_transaction("acc-1", "tx-2", when="2026-02-03T09:00:00Z")
        outcome = await worker.sync_entity("bravo", CYCLE)

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.reason == "ACCOUNT_OWNERSHIP_CONFLICT"
        assert await count(session_factory, BankTransaction) == 1
        assert await count(session_factory, BalanceSnapshot) == 1

    async def test_outcome_serializes(self, worker):
        data = (await worker.sync_entity("charlie", CYCLE)).to_dict()
        assert data["status"] == "skipped"
        assert data["entity_id"] == "charlie"
        assert data["balances"] == []


def test_cycle_dates_are_utc():
    assert cycle_start(utc(2026, 2, 3, 0, 1), 300).date() == date(2026, 2, 3)
