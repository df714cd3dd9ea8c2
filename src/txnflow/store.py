"""Persistence of transactions and their audit trail.

Every ORM failure is raised as `StorageError`. Status changes go through `Store.transition`, which validates the
transition and appends an audit event inside a single database transaction.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from uuid import UUID

from tortoise import timezone
from tortoise.backends.base.client import BaseDBAsyncClient
from tortoise.exceptions import BaseORMException
from tortoise.exceptions import IntegrityError
from tortoise.functions import Count
from tortoise.transactions import in_transaction

from txnflow import fsm
from txnflow.exceptions import StorageError
from txnflow.models import IngestionEvent
from txnflow.models import Transaction
from txnflow.models import TransactionStatus
from txnflow.models.evm_node import NormalizedTransaction
from txnflow.prometheus import Metrics

REGISTERED_REASON = 'transaction registered'
DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000

_logger = logging.getLogger(__name__)


@contextmanager
def _wrap_storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except BaseORMException as e:
        raise StorageError(f'failed to {action}: {e}') from e


def transition_reason(
    previous: TransactionStatus | None,
    new: TransactionStatus,
    error_reason: str | None,
) -> str:
    if error_reason:
        return error_reason
    previous_value = previous.value if previous else None
    return f'Status changed by worker: {previous_value} -> {new.value}'


class Store:
    """Relational storage of `Transaction` and `IngestionEvent` models"""

    async def submit(self, transaction_hash: str, chain_id: int) -> tuple[Transaction, bool]:
        """Register transaction in `RECEIVED` status; return existing one if already submitted"""
        with _wrap_storage_errors('submit transaction'):
            existing = await self.get_by_hash(transaction_hash, chain_id)
            if existing:
                return existing, False

            try:
                async with in_transaction() as conn:
                    transaction = await Transaction.create(
                        transaction_hash=transaction_hash,
                        chain_id=chain_id,
                        status=TransactionStatus.RECEIVED,
                        using_db=conn,
                    )
                    await self.insert_event(
                        transaction.id,
                        None,
                        TransactionStatus.RECEIVED,
                        REGISTERED_REASON,
                        using_db=conn,
                    )
            # NOTE: Submitted concurrently
            except IntegrityError:
                transaction = await Transaction.get(transaction_hash=transaction_hash, chain_id=chain_id)
                return transaction, False

        _logger.info('Transaction `%s` registered on chain %s', transaction_hash, chain_id)
        Metrics.set_transition(TransactionStatus.RECEIVED.value)
        return transaction, True

    async def get(self, transaction_id: UUID) -> Transaction | None:
        with _wrap_storage_errors('get transaction'):
            return await Transaction.get_or_none(id=transaction_id)

    async def get_by_hash(self, transaction_hash: str, chain_id: int | None = None) -> Transaction | None:
        """Get transaction by hash; without `chain_id` the earliest submitted match is returned"""
        with _wrap_storage_errors('get transaction'):
            query = Transaction.filter(transaction_hash=transaction_hash)
            if chain_id is not None:
                query = query.filter(chain_id=chain_id)
            return await query.order_by('created_at').first()

    async def get_events(self, transaction_id: UUID) -> list[IngestionEvent]:
        with _wrap_storage_errors('get events'):
            return await IngestionEvent.filter(transaction_id=transaction_id).order_by('id')

    async def list_transactions(
        self,
        from_address: str | None = None,
        to_address: str | None = None,
        chain_id: int | None = None,
        status: TransactionStatus | None = None,
        block_number_min: int | None = None,
        block_number_max: int | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> list[Transaction]:
        """List transactions newest first; `limit` is clamped to 1..1000"""
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        offset = max(0, offset)

        query = Transaction.all()
        if from_address is not None:
            query = query.filter(from_address__iexact=from_address)
        if to_address is not None:
            query = query.filter(to_address__iexact=to_address)
        if chain_id is not None:
            query = query.filter(chain_id=chain_id)
        if status is not None:
            query = query.filter(status=status)
        if block_number_min is not None:
            query = query.filter(block_number__gte=block_number_min)
        if block_number_max is not None:
            query = query.filter(block_number__lte=block_number_max)

        with _wrap_storage_errors('list transactions'):
            return await query.order_by('-created_at').offset(offset).limit(limit)

    async def count_by_status(self) -> dict[TransactionStatus, int]:
        with _wrap_storage_errors('count transactions'):
            rows = await Transaction.annotate(count=Count('id')).group_by('status').values('status', 'count')
        counts = {status: 0 for status in TransactionStatus}
        for row in rows:
            counts[TransactionStatus(row['status'])] = row['count']
        return counts

    async def select_received(self, limit: int) -> list[Transaction]:
        """Select up to `limit` transactions in `RECEIVED` status, oldest first"""
        with _wrap_storage_errors('select received transactions'):
            return (
                await Transaction.filter(status=TransactionStatus.RECEIVED)
                .order_by('created_at', 'id')
                .limit(limit)
            )

    async def select_stale(self, older_than: datetime, limit: int) -> list[Transaction]:
        """Select `FETCHING` transactions not updated since `older_than`"""
        with _wrap_storage_errors('select stale transactions'):
            return (
                await Transaction.filter(
                    status=TransactionStatus.FETCHING,
                    updated_at__lt=older_than,
                )
                .order_by('updated_at')
                .limit(limit)
            )

    async def get_status(
        self,
        transaction_id: UUID,
        using_db: BaseDBAsyncClient | None = None,
    ) -> TransactionStatus:
        with _wrap_storage_errors('get status'):
            rows = await Transaction.filter(id=transaction_id).using_db(using_db).values_list('status', flat=True)
        if not rows:
            raise StorageError(f'transaction does not exist: {transaction_id}')
        return TransactionStatus(rows[0])

    async def update_status(
        self,
        transaction_id: UUID,
        status: TransactionStatus,
        error_reason: str | None,
        using_db: BaseDBAsyncClient | None = None,
    ) -> None:
        with _wrap_storage_errors('update status'):
            updated = (
                await Transaction.filter(id=transaction_id)
                .using_db(using_db)
                .update(
                    status=status,
                    error_reason=error_reason,
                    updated_at=timezone.now(),
                )
            )
        if not updated:
            raise StorageError(f'transaction does not exist: {transaction_id}')

    async def insert_event(
        self,
        transaction_id: UUID,
        previous: TransactionStatus | None,
        new: TransactionStatus,
        reason: str,
        using_db: BaseDBAsyncClient | None = None,
    ) -> IngestionEvent:
        with _wrap_storage_errors('insert event'):
            return await IngestionEvent.create(
                transaction_id=transaction_id,
                previous_status=previous,
                new_status=new,
                reason=reason,
                using_db=using_db,
            )

    async def update_normalized(
        self,
        transaction_id: UUID,
        normalized: NormalizedTransaction,
        using_db: BaseDBAsyncClient | None = None,
    ) -> None:
        with _wrap_storage_errors('update normalized fields'):
            updated = await Transaction.filter(id=transaction_id).using_db(using_db).update(
                from_address=normalized.from_address,
                to_address=normalized.to_address,
                value=normalized.value,
                block_number=normalized.block_number,
                gas_used=normalized.gas_used,
                updated_at=timezone.now(),
            )
        if not updated:
            raise StorageError(f'transaction does not exist: {transaction_id}')

    async def transition(
        self,
        transaction_id: UUID,
        status: TransactionStatus,
        error_reason: str | None = None,
        normalized: NormalizedTransaction | None = None,
    ) -> TransactionStatus:
        """Atomically validate and apply status change, append audit event; return previous status

        `normalized` fields, if any, are written in the same database transaction.
        """
        with _wrap_storage_errors('transition status'):
            async with in_transaction() as conn:
                previous = await self.get_status(transaction_id, using_db=conn)
                fsm.validate_transition(previous, status)
                await self.update_status(transaction_id, status, error_reason, using_db=conn)
                if normalized is not None:
                    await self.update_normalized(transaction_id, normalized, using_db=conn)
                await self.insert_event(
                    transaction_id,
                    previous,
                    status,
                    transition_reason(previous, status, error_reason),
                    using_db=conn,
                )

        _logger.debug('Transaction `%s`: %s -> %s', transaction_id, previous.value, status.value)
        Metrics.set_transition(status.value)
        return previous
