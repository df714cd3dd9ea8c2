from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from tortoise import fields
from tortoise.models import Model

from txnflow.exceptions import FrameworkException

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tortoise.backends.base.client import BaseDBAsyncClient


class TransactionStatus(Enum):
    """Status of ingested transaction

    :param RECEIVED: Submitted, waiting for the worker
    :param FETCHING: Claimed by the worker
    :param PENDING: Known to the node but not mined (reserved)
    :param CONFIRMED: Fetched and normalized
    :param FAILED: Reverted on-chain (reserved)
    :param DROPPED: Evicted from mempool (reserved)
    :param ERROR: Failed to ingest
    """

    RECEIVED = 'RECEIVED'
    FETCHING = 'FETCHING'
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    FAILED = 'FAILED'
    DROPPED = 'DROPPED'
    ERROR = 'ERROR'


class Transaction(Model):
    id = fields.UUIDField(pk=True)
    transaction_hash = fields.CharField(max_length=128)
    chain_id = fields.IntField()
    status = fields.CharEnumField(TransactionStatus, max_length=16, default=TransactionStatus.RECEIVED)

    from_address = fields.CharField(max_length=64, null=True)
    to_address = fields.CharField(max_length=64, null=True)
    # NOTE: Wei amounts don't fit into BIGINT
    value = fields.TextField(null=True)
    block_number = fields.BigIntField(null=True)
    gas_used = fields.BigIntField(null=True)
    error_reason = fields.TextField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    events: fields.ReverseRelation[IngestionEvent]

    class Meta:
        table = 'transactions'
        unique_together = (('transaction_hash', 'chain_id'),)
        indexes = (
            ('transaction_hash',),
            ('from_address', 'block_number'),
            ('to_address', 'block_number'),
            ('block_number',),
            ('chain_id', 'created_at'),
            ('status', 'created_at'),
        )

    def __str__(self) -> str:
        return f'{self.transaction_hash}@{self.chain_id}'


class IngestionEvent(Model):
    """Append-only record of a single status transition"""

    id = fields.IntField(pk=True)
    transaction: fields.ForeignKeyRelation[Transaction] = fields.ForeignKeyField(
        'models.Transaction',
        related_name='events',
        on_delete=fields.RESTRICT,
    )
    previous_status = fields.CharEnumField(TransactionStatus, max_length=16, null=True)
    new_status = fields.CharEnumField(TransactionStatus, max_length=16)
    reason = fields.TextField(default='')

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = 'ingestion_events'
        ordering = ['id']

    # NOTE: Do not touch docstrings below this line to preserve Tortoise ones
    async def save(
        self,
        using_db: BaseDBAsyncClient | None = None,
        update_fields: Iterable[str] | None = None,
        force_create: bool = False,
        force_update: bool = False,
    ) -> None:
        if self._saved_in_db:
            raise FrameworkException('Ingestion events are append-only and can not be updated')
        await super().save(
            using_db=using_db,
            update_fields=update_fields,
            force_create=force_create,
            force_update=force_update,
        )

    async def delete(
        self,
        using_db: BaseDBAsyncClient | None = None,
    ) -> None:
        raise FrameworkException('Ingestion events are append-only and can not be deleted')
