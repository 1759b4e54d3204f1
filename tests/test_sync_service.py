import json
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest
from pydantic import ValidationError as PydanticValidationError

from ledgersync.database import SessionLocal
from ledgersync.app.models import (
    MerchantMapping, StatementFile, SyncJob, SyncJobStatus, TransactionSync, TransactionSyncStatus
)
from ledgersync.app.quickbooks.auth_service import RefreshLocks, TokenManager
from ledgersync.app.quickbooks.errors import AuthError, RemoteFault
from ledgersync.app.quickbooks.mapping_service import MappingService
from ledgersync.app.quickbooks.sync_service import SyncService

SETTINGS = {"bank_account_id": "35", "bank_account_name": "Checking", "min_confidence": 70}


def line_amount(item):
    return item["data"]["Line"][0]["Amount"]


def succeed_all(user_id, items):
    return [
        {"success": True, "type": item["type"], "result": {"Id": str(100 + i)}}
        for i, item in enumerate(items)
    ]


def fail_amounts(amounts):
    """Batch side effect failing every item whose line amount is in amounts."""
    def _create(user_id, items):
        results = []
        for i, item in enumerate(items):
            if line_amount(item) in amounts:
                results.append({
                    "success": False,
                    "type": item["type"],
                    "error": "QuickBooks error: Invalid Reference Id (2500)",
                    "auth_error": False,
                })
            else:
                results.append({"success": True, "type": item["type"], "result": {"Id": str(200 + i)}})
        return results
    return _create


def reject_auth(user_id, items):
    return [
        {"success": False, "type": item["type"], "error": "QuickBooks authentication failed", "auth_error": True}
        for item in items
    ]


def make_client(batch=succeed_all):
    client = Mock()
    client.environment = "sandbox"
    client.create_transactions_batch = AsyncMock(side_effect=batch)
    client.create_vendor = AsyncMock(return_value={"Id": "77", "DisplayName": "Corner Cafe"})
    client.create_customer = AsyncMock(return_value={"Id": "88", "DisplayName": "Acme Corp"})
    return client


@pytest.fixture
def mapping_service(db):
    return MappingService(db, oracle=Mock())


@pytest.fixture
def make_service(db, mock_provider, encryption, mapping_service):
    def _make(client=None, batch_size=25, sleep=None):
        token_manager = TokenManager(db, provider=mock_provider, encryption=encryption, refresh_locks=RefreshLocks())
        return SyncService(
            db,
            client=client or make_client(),
            mapping_service=mapping_service,
            token_manager=token_manager,
            batch_size=batch_size,
            batch_delay=0,
            sleep=sleep or AsyncMock(),
        )
    return _make


@pytest.fixture
def mapped(connection, mapping_service):
    mapping_service.save_category_mappings(connection.id, [
        {"category": "Groceries", "qb_account_id": "64", "qb_account_name": "Supplies",
         "qb_account_type": "Expense", "confidence": 90},
        {"category": "Gifts", "qb_account_id": "66", "qb_account_name": "Gifts",
         "qb_account_type": "Expense", "confidence": 50},
        {"category": "Sales", "qb_account_id": "79", "qb_account_name": "Sales of Product Income",
         "qb_account_type": "Income", "confidence": 95},
    ])
    return connection


def rows_for(db, job):
    return db.query(TransactionSync).filter(TransactionSync.sync_job_id == job.id).order_by(TransactionSync.id).all()


class TestCreateSyncJob:
    @pytest.mark.asyncio
    async def test_creates_pending_row_per_transaction(self, db, user, connection, statement_file, add_transaction, make_service):
        add_transaction(transaction_date=date(2024, 1, 20))
        add_transaction(transaction_date=date(2024, 1, 10))
        service = make_service()

        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        assert job.status == SyncJobStatus.PENDING
        assert job.total_transactions == 2
        assert json.loads(job.sync_settings)["bank_account_id"] == "35"
        rows = rows_for(db, job)
        assert len(rows) == 2
        assert all(r.status == TransactionSyncStatus.PENDING for r in rows)

    @pytest.mark.asyncio
    async def test_same_file_returns_existing_job(self, db, user, connection, statement_file, add_transaction, make_service):
        add_transaction()
        service = make_service()

        first = await service.create_sync_job(user.id, statement_file.id, SETTINGS)
        second = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        assert first.id == second.id
        assert db.query(SyncJob).count() == 1

    @pytest.mark.asyncio
    async def test_requires_connection(self, user, statement_file, add_transaction, make_service):
        add_transaction()

        with pytest.raises(AuthError):
            await make_service().create_sync_job(user.id, statement_file.id, SETTINGS)

    @pytest.mark.asyncio
    async def test_empty_file(self, user, connection, statement_file, make_service):
        with pytest.raises(ValueError, match="No transactions"):
            await make_service().create_sync_job(user.id, statement_file.id, SETTINGS)

    @pytest.mark.asyncio
    async def test_bank_account_is_required(self, user, connection, statement_file, add_transaction, make_service):
        add_transaction()

        with pytest.raises(PydanticValidationError):
            await make_service().create_sync_job(user.id, statement_file.id, {"min_confidence": 70})


class TestProcessSyncJob:
    @pytest.mark.asyncio
    async def test_groceries_purchase_end_to_end(self, db, user, mapped, statement_file, add_transaction, make_service):
        txn = add_transaction(amount=Decimal("-45.67"), category="Groceries")
        client = make_client(batch=lambda user_id, items: [{"success": True, "type": "purchase", "result": {"Id": "145"}}])
        service = make_service(client=client)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        result = await service.process_sync_job(job.id, user.id)

        assert result["status"] == "completed"
        assert result["synced"] == 1
        item = client.create_transactions_batch.call_args[0][1][0]
        assert item["type"] == "purchase"
        assert item["data"]["TxnDate"] == "2024-01-15"
        assert line_amount(item) == 45.67
        assert item["data"]["Line"][0]["AccountBasedExpenseLineDetail"]["AccountRef"]["value"] == "64"
        assert f"File ID: {statement_file.id}" in item["data"]["PrivateNote"]
        row = rows_for(db, job)[0]
        assert row.transaction_id == txn.id
        assert row.status == TransactionSyncStatus.SYNCED
        assert row.qb_transaction_id == "145"
        assert row.qb_transaction_type == "purchase"
        assert row.qb_link == "https://app.sandbox.qbo.intuit.com/app/purchase?txnId=145&realmId=9130354"
        db.refresh(mapped)
        assert mapped.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_mixed_outcomes_give_partial(self, db, user, mapped, statement_file, add_transaction, make_service):
        for amount in range(1, 9):
            add_transaction(amount=Decimal(-amount), category="Groceries")
        add_transaction(amount=Decimal("-20"), category="Gifts")
        add_transaction(amount=Decimal("-21"), category="Gifts")
        client = make_client(batch=fail_amounts({2.0, 4.0, 6.0}))
        service = make_service(client=client, batch_size=4)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        result = await service.process_sync_job(job.id, user.id)

        assert result["status"] == "partial"
        assert (result["synced"], result["failed"], result["skipped"]) == (5, 3, 2)
        status = service.get_sync_job_status(job.id, user.id)
        assert status["progress"] == 100
        assert len(status["error_log"]) == 3
        skipped = [t for t in status["transactions"] if t["status"] == TransactionSyncStatus.SKIPPED]
        assert all("below threshold" in t["error_message"] for t in skipped)
        # 8 postable records in chunks of 4, low confidence ones never sent
        assert sum(len(c[0][1]) for c in client.create_transactions_batch.call_args_list) == 8

    @pytest.mark.asyncio
    async def test_local_failures_do_not_reach_remote(self, db, user, mapped, statement_file, add_transaction, make_service):
        add_transaction(amount=None)
        add_transaction(category="Travel")
        client = make_client()
        service = make_service(client=client)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        result = await service.process_sync_job(job.id, user.id)

        assert result["status"] == "failed"
        assert result["failed"] == 2
        client.create_transactions_batch.assert_not_called()
        messages = [r.error_message for r in rows_for(db, job)]
        assert any("Missing transaction amount" in m for m in messages)
        assert "No mapping for category: Travel" in messages

    @pytest.mark.asyncio
    async def test_auth_error_leaves_records_pending(self, db, user, mapped, statement_file, add_transaction, make_service):
        add_transaction()
        add_transaction()
        service = make_service(client=make_client(batch=reject_auth))
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        result = await service.process_sync_job(job.id, user.id)

        assert result["status"] == "failed"
        assert "reconnect required" in result["errors"][-1]["errors"][0]
        db.refresh(job)
        assert job.status == SyncJobStatus.FAILED
        assert job.failed_transactions == 0
        assert all(r.status == TransactionSyncStatus.PENDING for r in rows_for(db, job))

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job_and_propagates(self, db, user, mapped, statement_file, add_transaction, make_service):
        add_transaction()
        client = make_client(batch=RuntimeError("boom"))
        service = make_service(client=client)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        with pytest.raises(RuntimeError):
            await service.process_sync_job(job.id, user.id)

        db.refresh(job)
        assert job.status == SyncJobStatus.FAILED

    @pytest.mark.asyncio
    async def test_finished_job_is_not_reprocessed(self, user, mapped, statement_file, add_transaction, make_service):
        add_transaction()
        service = make_service()
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)
        await service.process_sync_job(job.id, user.id)

        with pytest.raises(ValueError, match="already completed"):
            await service.process_sync_job(job.id, user.id)


    @pytest.mark.asyncio
    async def test_error_log_follows_row_order(self, user, mapped, statement_file, add_transaction, make_service):
        rejected = add_transaction(transaction_date=date(2024, 1, 10), amount=Decimal("-2"))
        unmapped = add_transaction(transaction_date=date(2024, 1, 20), category="Travel")
        service = make_service(client=make_client(batch=fail_amounts({2.0})))
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        result = await service.process_sync_job(job.id, user.id)

        assert [e["transaction_id"] for e in result["errors"]] == [rejected.id, unmapped.id]
        status = service.get_sync_job_status(job.id, user.id)
        assert [e["transaction_id"] for e in status["error_log"]] == [rejected.id, unmapped.id]


class TestMerchantAutoCreation:
    @pytest.mark.asyncio
    async def test_vendor_created_once_per_merchant(self, db, user, mapped, statement_file, add_transaction, make_service):
        for _ in range(3):
            add_transaction(normalized_merchant="Corner Cafe")
        client = make_client()
        service = make_service(client=client)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        await service.process_sync_job(job.id, user.id)

        client.create_vendor.assert_awaited_once()
        assert client.create_vendor.call_args[0][1]["DisplayName"] == "Corner Cafe"
        items = client.create_transactions_batch.call_args[0][1]
        assert all(item["data"]["EntityRef"]["value"] == "77" for item in items)
        mapping = db.query(MerchantMapping).one()
        assert mapping.auto_created is True
        assert mapping.qb_vendor_id == "77"

    @pytest.mark.asyncio
    async def test_money_in_creates_customer(self, db, user, mapped, statement_file, add_transaction, make_service):
        add_transaction(amount=Decimal("1200"), category="Sales", normalized_merchant="Acme")
        client = make_client()
        service = make_service(client=client)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        await service.process_sync_job(job.id, user.id)

        client.create_customer.assert_awaited_once()
        item = client.create_transactions_batch.call_args[0][1][0]
        assert item["type"] == "deposit"
        assert item["data"]["Line"][0]["DepositLineDetail"]["Entity"]["value"] == "88"

    @pytest.mark.asyncio
    async def test_creation_failure_posts_without_entity(self, db, user, mapped, statement_file, add_transaction, make_service):
        add_transaction(normalized_merchant="Corner Cafe")
        add_transaction(normalized_merchant="Corner Cafe")
        client = make_client()
        client.create_vendor.side_effect = RemoteFault("6240", "Duplicate Name Exists Error")
        service = make_service(client=client)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        result = await service.process_sync_job(job.id, user.id)

        assert result["synced"] == 2
        client.create_vendor.assert_awaited_once()
        items = client.create_transactions_batch.call_args[0][1]
        assert all("EntityRef" not in item["data"] for item in items)

    @pytest.mark.asyncio
    async def test_auto_create_can_be_disabled(self, user, mapped, statement_file, add_transaction, make_service):
        add_transaction(normalized_merchant="Corner Cafe")
        client = make_client()
        service = make_service(client=client)
        job = await service.create_sync_job(
            user.id, statement_file.id, dict(SETTINGS, auto_create_merchants=False)
        )

        await service.process_sync_job(job.id, user.id)

        client.create_vendor.assert_not_called()


class TestRetryAndCancel:
    @pytest.mark.asyncio
    async def test_retry_only_touches_failed_records(self, db, user, mapped, statement_file, add_transaction, make_service):
        for amount in range(1, 5):
            add_transaction(amount=Decimal(-amount))
        client = make_client(batch=fail_amounts({1.0, 3.0}))
        service = make_service(client=client)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)
        await service.process_sync_job(job.id, user.id)
        synced_before = {r.id: r.qb_transaction_id for r in rows_for(db, job) if r.status == TransactionSyncStatus.SYNCED}

        client.create_transactions_batch.side_effect = succeed_all
        result = await service.retry_failed_transactions(job.id, user.id)

        assert result["retried"] == 2
        assert result["status"] == "completed"
        assert len(client.create_transactions_batch.call_args[0][1]) == 2
        db.refresh(job)
        assert (job.synced_transactions, job.failed_transactions) == (4, 0)
        for row in rows_for(db, job):
            assert row.status == TransactionSyncStatus.SYNCED
            if row.id in synced_before:
                assert row.retry_count == 0
                assert row.qb_transaction_id == synced_before[row.id]
            else:
                assert row.retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_without_failures(self, user, mapped, statement_file, add_transaction, make_service):
        add_transaction()
        service = make_service()
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)
        await service.process_sync_job(job.id, user.id)

        with pytest.raises(ValueError, match="No failed or pending transactions"):
            await service.retry_failed_transactions(job.id, user.id)

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_batch(self, db, user, mapped, statement_file, add_transaction, make_service):
        for _ in range(3):
            add_transaction()
        holder = {}

        async def cancel_on_sleep(seconds):
            holder["service"].cancel_sync_job(holder["job_id"], user.id)

        client = make_client()
        service = make_service(client=client, batch_size=1, sleep=cancel_on_sleep)
        holder["service"] = service
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)
        holder["job_id"] = job.id

        result = await service.process_sync_job(job.id, user.id)

        assert result["status"] == "failed"
        assert result["synced"] == 1
        assert client.create_transactions_batch.await_count == 1
        statuses = [r.status for r in rows_for(db, job)]
        assert statuses.count(TransactionSyncStatus.PENDING) == 2
        status = service.get_sync_job_status(job.id, user.id)
        assert status["error_log"][-1]["errors"] == ["Cancelled by user"]

    @pytest.mark.asyncio
    async def test_retry_resumes_records_left_by_auth_stop(self, db, user, mapped, statement_file, add_transaction, make_service):
        add_transaction()
        add_transaction()
        client = make_client(batch=reject_auth)
        service = make_service(client=client)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)
        assert (await service.process_sync_job(job.id, user.id))["status"] == "failed"

        # Reconnected: QuickBooks accepts the posts again
        client.create_transactions_batch.side_effect = succeed_all
        result = await service.retry_failed_transactions(job.id, user.id)

        assert result["retried"] == 2
        assert result["status"] == "completed"
        db.refresh(job)
        assert job.status == SyncJobStatus.COMPLETED
        assert job.synced_transactions == 2
        for row in rows_for(db, job):
            assert row.status == TransactionSyncStatus.SYNCED
            assert row.retry_count == 0
        error_log = service.get_sync_job_status(job.id, user.id)["error_log"]
        assert len(error_log) == 1
        assert "reconnect required" in error_log[0]["errors"][0]

    @pytest.mark.asyncio
    async def test_retry_refuses_unfinished_job(self, user, mapped, statement_file, add_transaction, make_service):
        add_transaction()
        service = make_service()
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)

        with pytest.raises(ValueError, match="still pending"):
            await service.retry_failed_transactions(job.id, user.id)

    @pytest.mark.asyncio
    async def test_cancel_from_another_session_during_batch(self, db, user, mapped, statement_file, add_transaction, make_service):
        for _ in range(3):
            add_transaction()
        holder = {}

        def cancel_elsewhere(user_id, items):
            other = SessionLocal()
            try:
                SyncService(other, client=Mock(), mapping_service=Mock(), token_manager=Mock()).cancel_sync_job(
                    holder["job_id"], user_id
                )
            finally:
                other.close()
            return succeed_all(user_id, items)

        client = make_client(batch=cancel_elsewhere)
        service = make_service(client=client, batch_size=1)
        job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)
        holder["job_id"] = job.id

        result = await service.process_sync_job(job.id, user.id)

        assert result["status"] == "failed"
        assert result["synced"] == 1
        assert client.create_transactions_batch.await_count == 1
        db.refresh(job)
        assert job.status == SyncJobStatus.FAILED
        assert job.synced_transactions == 1
        status = service.get_sync_job_status(job.id, user.id)
        assert status["error_log"] == [{"transaction_id": None, "errors": ["Cancelled by user"]}]
        statuses = [t["status"] for t in status["transactions"]]
        assert statuses.count(TransactionSyncStatus.PENDING) == 2

    def test_unknown_job(self, user, make_service):
        with pytest.raises(ValueError, match="not found"):
            make_service().get_sync_job_status(999, user.id)

    @pytest.mark.asyncio
    async def test_history_newest_first(self, db, user, mapped, add_transaction, make_service):
        service = make_service()
        job_ids = []
        for name in ("a.pdf", "b.pdf"):
            statement_file = StatementFile(user_id=user.id, filename=name)
            db.add(statement_file)
            db.commit()
            add_transaction(file_id=statement_file.id)
            job = await service.create_sync_job(user.id, statement_file.id, SETTINGS)
            job_ids.append(job.id)

        history = service.get_sync_job_history(user.id, limit=1)

        assert [j.id for j in history] == [job_ids[1]]
