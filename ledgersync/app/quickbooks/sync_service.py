"""
QuickBooks Sync Orchestrator

Drives a sync job from creation to a terminal status:
- Job creation with one pending TransactionSync row per statement transaction
- Per-transaction validation, mapping lookup and confidence floor
- Auto-creation of missing vendors/customers
- Batched posting with a delay between batches
- Retry of failed records and cancellation

Jobs: pending -> processing -> completed | partial | failed
Records: pending -> synced | failed | skipped
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import httpx
from sqlalchemy.orm import Session

from ledgersync.config import get_settings
from ledgersync.database import SessionLocal
from ledgersync.app.models import (
    StatementTransaction, SyncJob, SyncJobStatus, TransactionSync, TransactionSyncStatus,
    MerchantMappingType
)
from ledgersync.app.schemas import SyncJobSettings
from .auth_service import TokenManager
from .client import QuickBooksClient
from .converter import (
    convert_transaction, create_customer_data, create_vendor_data,
    get_transaction_link, parse_amount, validate_transaction
)
from .errors import AuthError, MappingError, MissingMapping, QuickBooksError, ValidationError
from .mapping_service import MappingService, MappingSnapshot, merchant_mapping_to_dict

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (SyncJobStatus.PENDING, SyncJobStatus.PROCESSING)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def transaction_to_dict(txn: StatementTransaction) -> Dict[str, Any]:
    return {
        'id': txn.id,
        'file_id': txn.file_id,
        'transaction_date': txn.transaction_date,
        'amount': txn.amount,
        'description': txn.description,
        'normalized_merchant': txn.normalized_merchant,
        'category': txn.category,
        'subcategory': txn.subcategory,
        'confidence': txn.confidence,
    }


def transaction_sync_to_dict(row: TransactionSync) -> Dict[str, Any]:
    return {
        'id': row.id,
        'transaction_id': row.transaction_id,
        'status': row.status,
        'qb_transaction_id': row.qb_transaction_id,
        'qb_transaction_type': row.qb_transaction_type,
        'qb_link': row.qb_link,
        'error_message': row.error_message,
        'retry_count': row.retry_count or 0,
        'synced_at': row.synced_at,
    }


def _load_json(value: Optional[str], default):
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


class RunLog:
    """Error entries of one run; entries not yet written to the job are handed out once."""

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []
        self._saved = 0

    def add(self, transaction_id: Optional[int], errors: List[str]) -> None:
        self.entries.append({'transaction_id': transaction_id, 'errors': errors})

    def unsaved(self) -> List[Dict[str, Any]]:
        new = self.entries[self._saved:]
        self._saved = len(self.entries)
        return new


class SyncService:
    """
    Sync job service for one database session.

    Example:
        >>> service = SyncService(db)
        >>> job = await service.create_sync_job(user.id, file_id=7, settings={'bank_account_id': '35'})
        >>> result = await service.process_sync_job(job.id, user.id)
        >>> print(f"Synced {result['synced']}, failed {result['failed']}")
    """

    def __init__(
        self,
        db: Session,
        client: Optional[QuickBooksClient] = None,
        mapping_service: Optional[MappingService] = None,
        token_manager: Optional[TokenManager] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        sleep=asyncio.sleep
    ):
        self.db = db
        self.settings = get_settings()
        self.token_manager = token_manager or TokenManager(db)
        self.client = client or QuickBooksClient(db, token_manager=self.token_manager)
        self.mapping_service = mapping_service or MappingService(db)
        self.batch_size = batch_size or self.settings.sync_batch_size
        self.batch_delay = self.settings.sync_batch_delay_seconds if batch_delay is None else batch_delay
        self._sleep = sleep

    # Job creation

    async def create_sync_job(
        self,
        user_id: int,
        file_id: int,
        settings: Union[SyncJobSettings, Dict[str, Any]]
    ) -> SyncJob:
        """
        Create a sync job for every transaction in a statement file.

        Creating a job for a (connection, file) pair that already has one
        returns the existing job.

        Raises:
            AuthError: The user has no valid QuickBooks connection
            ValueError: Invalid settings, or the file has no transactions
        """
        if not isinstance(settings, SyncJobSettings):
            settings = SyncJobSettings(**settings)

        connection = await self.token_manager.get_valid_connection(user_id)
        if connection is None:
            raise AuthError("No active QuickBooks connection found")

        existing = self.db.query(SyncJob).filter(
            SyncJob.connection_id == connection.id,
            SyncJob.file_id == file_id
        ).first()
        if existing:
            logger.info(f"Sync job {existing.id} already exists for file {file_id}")
            return existing

        transactions = self.db.query(StatementTransaction).filter(
            StatementTransaction.file_id == file_id,
            StatementTransaction.user_id == user_id
        ).order_by(StatementTransaction.transaction_date, StatementTransaction.id).all()

        if not transactions:
            raise ValueError("No transactions found for this file")

        job = SyncJob(
            user_id=user_id,
            connection_id=connection.id,
            file_id=file_id,
            status=SyncJobStatus.PENDING,
            total_transactions=len(transactions),
            synced_transactions=0,
            failed_transactions=0,
            skipped_transactions=0,
            sync_settings=settings.model_dump_json(),
            error_log=json.dumps([]),
        )
        self.db.add(job)
        self.db.flush()

        self.db.add_all([
            TransactionSync(
                sync_job_id=job.id,
                transaction_id=txn.id,
                status=TransactionSyncStatus.PENDING,
                retry_count=0
            )
            for txn in transactions
        ])
        self.db.commit()
        self.db.refresh(job)

        logger.info(f"Created sync job {job.id} with {len(transactions)} transactions")
        return job

    def _get_job(self, job_id: int, user_id: int) -> SyncJob:
        job = self.db.query(SyncJob).filter(
            SyncJob.id == job_id,
            SyncJob.user_id == user_id
        ).first()
        if not job:
            raise ValueError("Sync job not found")
        return job

    # Processing

    async def process_sync_job(self, job_id: int, user_id: int) -> Dict[str, Any]:
        """
        Run a job over its pending records.

        Per-record problems fail or skip that record only. An AuthError
        stops the run and fails the job; the remaining records stay pending
        so a retry after reconnecting picks them up. A cancel made while
        the run is in flight is kept: the run stops at the end of the
        current batch and never overwrites the job status.

        Returns:
            {
                'status': str,
                'synced': int,
                'failed': int,
                'skipped': int,
                'errors': [{'transaction_id', 'errors'}]
            }
        """
        job = self._get_job(job_id, user_id)
        if job.status not in ACTIVE_STATUSES:
            raise ValueError(f"Sync job {job.id} is already {SyncJobStatus(job.status).value}")

        job.status = SyncJobStatus.PROCESSING
        job.started_at = job.started_at or utcnow()
        job.completed_at = None
        self.db.commit()

        run_log = RunLog()
        try:
            await self._run(job, user_id, run_log)
        except AuthError as e:
            logger.warning(f"Sync job {job.id} stopped: {e}")
            run_log.add(None, [f"{e} (reconnect required)"])
            self._save_log(job, run_log)
            job.status = SyncJobStatus.FAILED
            job.completed_at = utcnow()
            self.db.commit()
            return self._summary(job, run_log)
        except Exception:
            logger.exception(f"Sync job {job.id} crashed")
            self.db.rollback()
            run_log.add(None, ['Unexpected error during sync'])
            self._save_log(job, run_log)
            job.status = SyncJobStatus.FAILED
            job.completed_at = utcnow()
            self.db.commit()
            raise

        return self._summary(job, run_log)

    async def _run(self, job: SyncJob, user_id: int, run_log: RunLog) -> None:
        settings = _load_json(job.sync_settings, {})
        min_confidence = settings.get('min_confidence', self.settings.sync_default_min_confidence)

        rows = self.db.query(TransactionSync).join(
            StatementTransaction, TransactionSync.transaction_id == StatementTransaction.id
        ).filter(
            TransactionSync.sync_job_id == job.id,
            TransactionSync.status == TransactionSyncStatus.PENDING
        ).order_by(StatementTransaction.transaction_date, StatementTransaction.id).all()

        snapshot = self.mapping_service.get_mapping_snapshot(job.connection_id)
        company_id = job.connection.company_id
        failed_merchants = set()

        logger.info(f"Sync job {job.id}: processing {len(rows)} pending transactions")

        for start in range(0, len(rows), self.batch_size):
            if start > 0:
                await self._sleep(self.batch_delay)
                self.db.refresh(job)
                if job.status != SyncJobStatus.PROCESSING:
                    logger.info(f"Sync job {job.id} was cancelled, stopping")
                    return

            plan = []
            for row in rows[start:start + self.batch_size]:
                txn = transaction_to_dict(row.transaction)
                try:
                    prepared = await self._prepare(
                        user_id, job, txn, snapshot, settings, min_confidence, failed_merchants
                    )
                except (ValidationError, MappingError) as e:
                    plan.append((row, None, str(e)))
                    continue
                plan.append((row, prepared, None))

            await self._post_batch(user_id, job, company_id, plan, run_log)

            self._save_log(job, run_log)
            self.db.commit()
            if job.status != SyncJobStatus.PROCESSING:
                logger.info(f"Sync job {job.id} was cancelled during a batch, stopping")
                return

        self._finish(job)

    async def _prepare(
        self,
        user_id: int,
        job: SyncJob,
        txn: Dict[str, Any],
        snapshot: MappingSnapshot,
        settings: Dict[str, Any],
        min_confidence: int,
        failed_merchants: set
    ) -> Dict[str, Any]:
        """Validate and convert one record, or return {'skip_reason': str}."""
        validation = validate_transaction(txn)
        if not validation['valid']:
            raise ValidationError('; '.join(validation['errors']))

        category_mapping = snapshot.category_for(txn['category'], txn.get('subcategory'))
        if not category_mapping:
            raise MissingMapping(f"No mapping for category: {txn['category']}")

        confidence = category_mapping.get('confidence') or 0
        if confidence < min_confidence:
            return {'skip_reason': f"Mapping confidence {confidence}% is below threshold {min_confidence}%"}

        merchant = txn.get('normalized_merchant')
        merchant_mapping = snapshot.merchant_for(merchant)
        if (merchant and merchant_mapping is None and merchant not in failed_merchants
                and settings.get('auto_create_merchants', True)):
            merchant_mapping = await self._auto_create_merchant(
                user_id, job.connection_id, merchant, parse_amount(txn['amount']) > 0, snapshot
            )
            if merchant_mapping is None:
                failed_merchants.add(merchant)

        return convert_transaction(txn, {'category': category_mapping, 'merchant': merchant_mapping}, settings)

    async def _auto_create_merchant(
        self,
        user_id: int,
        connection_id: int,
        merchant: str,
        is_customer: bool,
        snapshot: MappingSnapshot
    ) -> Optional[Dict[str, Any]]:
        """
        Create a vendor (money out) or customer (money in) named after the merchant.

        Failures other than AuthError are logged and the record is posted
        without an entity.
        """
        try:
            if is_customer:
                entity = await self.client.create_customer(user_id, create_customer_data(merchant))
            else:
                entity = await self.client.create_vendor(user_id, create_vendor_data(merchant))
        except AuthError:
            raise
        except (QuickBooksError, httpx.HTTPError) as e:
            logger.warning(f"Could not create QuickBooks entity for merchant {merchant!r}: {e}")
            return None

        entity_id = str(entity.get('Id'))
        entity_name = entity.get('DisplayName') or merchant
        data = {
            'normalized_merchant': merchant,
            'mapping_type': (MerchantMappingType.CUSTOMER if is_customer else MerchantMappingType.VENDOR).value,
            'confidence': 100,
            'auto_created': True,
            'reasoning': 'Created during sync',
        }
        if is_customer:
            data.update(qb_customer_id=entity_id, qb_customer_name=entity_name)
        else:
            data.update(qb_vendor_id=entity_id, qb_vendor_name=entity_name)

        saved = self.mapping_service.save_merchant_mappings(connection_id, [data])
        mapping = merchant_mapping_to_dict(saved[0])
        snapshot.add_merchant(merchant, mapping)
        logger.info(f"Created QuickBooks {'customer' if is_customer else 'vendor'} {entity_id} for {merchant!r}")
        return mapping

    async def _post_batch(
        self,
        user_id: int,
        job: SyncJob,
        company_id: str,
        plan: List,
        run_log: RunLog
    ) -> None:
        """Post the ready records of a batch, then record every outcome in row order."""
        ready = [
            (row, prepared) for row, prepared, local_error in plan
            if local_error is None and not prepared.get('skip_reason')
        ]
        posted = {}
        if ready:
            results = await self.client.create_transactions_batch(user_id, [prepared for _, prepared in ready])
            posted = {row.id: result for (row, _), result in zip(ready, results)}

        auth_failed = None
        for row, prepared, local_error in plan:
            if local_error is not None:
                self._mark_failed(job, row, [local_error], run_log)
            elif prepared.get('skip_reason'):
                self._mark_skipped(job, row, prepared['skip_reason'])
            else:
                result = posted[row.id]
                if result['success']:
                    self._mark_synced(job, row, prepared, str(result['result'].get('Id')), company_id)
                elif result.get('auth_error'):
                    # Left pending for a retry after reconnecting
                    auth_failed = result['error']
                else:
                    self._mark_failed(job, row, [result['error']], run_log)

        if auth_failed:
            raise AuthError(auth_failed)

    def _mark_synced(self, job: SyncJob, row: TransactionSync, prepared: Dict[str, Any], qb_id: str, company_id: str) -> None:
        row.status = TransactionSyncStatus.SYNCED
        row.qb_transaction_id = qb_id
        row.qb_transaction_type = prepared['type']
        row.qb_link = get_transaction_link(prepared['type'], qb_id, company_id, self.client.environment)
        row.error_message = None
        row.synced_at = utcnow()
        job.synced_transactions += 1

    def _mark_failed(self, job: SyncJob, row: TransactionSync, errors: List[str], run_log: RunLog) -> None:
        row.status = TransactionSyncStatus.FAILED
        row.error_message = '; '.join(errors)
        job.failed_transactions += 1
        run_log.add(row.transaction_id, errors)

    def _mark_skipped(self, job: SyncJob, row: TransactionSync, reason: str) -> None:
        row.status = TransactionSyncStatus.SKIPPED
        row.error_message = reason
        job.skipped_transactions += 1

    def _save_log(self, job: SyncJob, run_log: RunLog) -> None:
        """Append unsaved run entries to the stored log, which another session may have extended."""
        stored = self.db.query(SyncJob.error_log).filter(SyncJob.id == job.id).with_for_update().scalar()
        job.error_log = json.dumps(_load_json(stored, []) + run_log.unsaved())

    def _finish(self, job: SyncJob) -> None:
        if job.failed_transactions >= job.total_transactions:
            final_status = SyncJobStatus.FAILED
        elif job.failed_transactions == 0:
            final_status = SyncJobStatus.COMPLETED
        else:
            final_status = SyncJobStatus.PARTIAL

        # Only a job still processing is finished; a cancelled one stays failed
        finished = self.db.query(SyncJob).filter(
            SyncJob.id == job.id,
            SyncJob.status == SyncJobStatus.PROCESSING
        ).update({SyncJob.status: final_status, SyncJob.completed_at: utcnow()}, synchronize_session=False)
        self.db.commit()

        if not finished:
            logger.info(f"Sync job {job.id} was cancelled before it finished")
            return

        self.token_manager.update_last_synced(job.connection_id)
        logger.info(
            f"Sync job {job.id} {final_status.value}: synced={job.synced_transactions} "
            f"failed={job.failed_transactions} skipped={job.skipped_transactions}"
        )

    def _summary(self, job: SyncJob, run_log: RunLog) -> Dict[str, Any]:
        return {
            'status': SyncJobStatus(job.status).value,
            'synced': job.synced_transactions,
            'failed': job.failed_transactions,
            'skipped': job.skipped_transactions,
            'errors': run_log.entries,
        }

    # Job control

    def get_sync_job_status(self, job_id: int, user_id: int) -> Dict[str, Any]:
        job = self._get_job(job_id, user_id)
        rows = self.db.query(TransactionSync).filter(
            TransactionSync.sync_job_id == job.id
        ).order_by(TransactionSync.id).all()

        done = job.synced_transactions + job.failed_transactions + job.skipped_transactions
        progress = round(done / job.total_transactions * 100) if job.total_transactions else 0

        return {
            'id': job.id,
            'connection_id': job.connection_id,
            'file_id': job.file_id,
            'status': job.status,
            'total_transactions': job.total_transactions,
            'synced_transactions': job.synced_transactions,
            'failed_transactions': job.failed_transactions,
            'skipped_transactions': job.skipped_transactions,
            'created_at': job.created_at,
            'started_at': job.started_at,
            'completed_at': job.completed_at,
            'progress': progress,
            'settings': _load_json(job.sync_settings, None),
            'error_log': _load_json(job.error_log, []),
            'transactions': [transaction_sync_to_dict(row) for row in rows],
        }

    async def retry_failed_transactions(self, job_id: int, user_id: int) -> Dict[str, Any]:
        """
        Run a finished job again over its failed and pending records.

        Failed records go back to pending with their retry_count bumped.
        Pending records are those an auth stop or a cancel left unposted.
        Synced and skipped records are not touched.

        Raises:
            ValueError: Job not found, still running, or nothing to retry
        """
        job = self._get_job(job_id, user_id)
        if job.status in ACTIVE_STATUSES:
            raise ValueError(f"Sync job {job.id} is still {SyncJobStatus(job.status).value}")

        rows = self.db.query(TransactionSync).filter(
            TransactionSync.sync_job_id == job.id,
            TransactionSync.status.in_([TransactionSyncStatus.FAILED, TransactionSyncStatus.PENDING])
        ).all()

        if not rows:
            raise ValueError("No failed or pending transactions to retry")

        failed_rows = [row for row in rows if row.status == TransactionSyncStatus.FAILED]
        for row in failed_rows:
            row.status = TransactionSyncStatus.PENDING
            row.retry_count = (row.retry_count or 0) + 1
            row.error_message = None

        job.failed_transactions = max(0, job.failed_transactions - len(failed_rows))
        job.status = SyncJobStatus.PROCESSING
        job.completed_at = None
        self.db.commit()

        logger.info(
            f"Retrying sync job {job.id}: {len(failed_rows)} failed, "
            f"{len(rows) - len(failed_rows)} pending transactions"
        )
        result = await self.process_sync_job(job.id, user_id)
        result['retried'] = len(rows)
        return result

    def cancel_sync_job(self, job_id: int, user_id: int) -> SyncJob:
        """
        Mark a job failed with a cancellation note.

        Records are left as they are; anything already posted stays in QuickBooks.
        A running job stops at the end of its current batch.
        """
        job = self._get_job(job_id, user_id)
        self.db.refresh(job, with_for_update=True)

        error_log = _load_json(job.error_log, [])
        error_log.append({'transaction_id': None, 'errors': ['Cancelled by user']})

        job.status = SyncJobStatus.FAILED
        job.error_log = json.dumps(error_log)
        job.completed_at = utcnow()
        self.db.commit()

        logger.info(f"Sync job {job.id} cancelled by user {user_id}")
        return job

    def get_sync_job_history(self, user_id: int, limit: int = 20) -> List[SyncJob]:
        return self.db.query(SyncJob).filter(
            SyncJob.user_id == user_id
        ).order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).limit(limit).all()


async def run_sync_job(job_id: int, user_id: int) -> None:
    """Background entry point; uses its own database session."""
    db = SessionLocal()
    try:
        await SyncService(db).process_sync_job(job_id, user_id)
    except Exception:
        logger.exception(f"Background sync job {job_id} failed")
    finally:
        db.close()
