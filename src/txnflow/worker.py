"""Ingestion worker.

Polls the store for `RECEIVED` transactions and drives each of them through `FETCHING` to either `CONFIRMED` or
`ERROR`. Items are processed one by one; a failing item never aborts the batch.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from contextlib import AsyncExitStack
from contextlib import suppress
from datetime import timedelta
from typing import Any
from typing import TypeVar

from tortoise import timezone

from txnflow import codec
from txnflow.chains import ChainRegistry
from txnflow.config import ChainConfig
from txnflow.config import HttpConfig
from txnflow.config import WorkerConfig
from txnflow.datasources.evm_node import EvmNodeClient
from txnflow.exceptions import InvalidTransitionError
from txnflow.exceptions import MalformedHexError
from txnflow.exceptions import NotFoundError
from txnflow.exceptions import RPCProtocolError
from txnflow.exceptions import RPCTransportError
from txnflow.exceptions import StorageError
from txnflow.exceptions import UnsupportedChainError
from txnflow.models import Transaction
from txnflow.models import TransactionStatus
from txnflow.models.evm_node import EvmNodeReceiptData
from txnflow.models.evm_node import EvmNodeTransactionData
from txnflow.models.evm_node import NormalizedTransaction
from txnflow.prometheus import Metrics
from txnflow.store import Store

ClientFactory = Callable[[ChainConfig, HttpConfig | None], EvmNodeClient]

# NOTE: Terminal for the item, never for the batch
fetch_exceptions = (
    UnsupportedChainError,
    NotFoundError,
    RPCProtocolError,
    RPCTransportError,
)

_logger = logging.getLogger(__name__)

T = TypeVar('T')


def create_client(chain: ChainConfig, http_config: HttpConfig | None) -> EvmNodeClient:
    return EvmNodeClient(chain.url, http_config)


def _decode(field: str, value: str | None, decoder: Callable[[str], T]) -> T | None:
    if value is None:
        return None
    try:
        return decoder(value)
    except MalformedHexError as e:
        _logger.warning('Failed to decode `%s`, leaving it unset: %s', field, e)
        Metrics.set_normalization_error(field)
        return None


def normalize(
    transaction: EvmNodeTransactionData,
    receipt: EvmNodeReceiptData | None,
) -> NormalizedTransaction:
    """Decode hex quantities; fields which fail to decode are left unset"""
    return NormalizedTransaction(
        from_address=transaction.from_,
        to_address=transaction.to,
        value=_decode('value', transaction.value, codec.hex_to_decimal),
        block_number=_decode('block_number', transaction.block_number, codec.hex_to_int64),
        gas_used=_decode('gas_used', receipt.gas_used, codec.hex_to_int64) if receipt else None,
    )


class IngestionWorker(AbstractAsyncContextManager['IngestionWorker']):
    def __init__(
        self,
        store: Store,
        registry: ChainRegistry,
        config: WorkerConfig,
        http_config: HttpConfig | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._config = config
        self._http_config = http_config
        self._client_factory = client_factory or create_client
        self._clients: dict[int, EvmNodeClient] = {}
        self._exit_stack = AsyncExitStack()
        self._stop_event = asyncio.Event()

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.close()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request worker to stop after the current item"""
        if not self._stop_event.is_set():
            _logger.info('Stop requested')
        self._stop_event.set()

    async def close(self) -> None:
        """Close RPC client sessions"""
        await self._exit_stack.aclose()
        self._clients.clear()

    async def run(self) -> None:
        """Poll and process batches until stopped or cancelled"""
        _logger.info(
            'Starting worker: poll interval %ss, batch size %s',
            self._config.poll_interval,
            self._config.batch_size,
        )
        while not self._stop_event.is_set():
            batch = asyncio.ensure_future(self.tick())
            try:
                await asyncio.shield(batch)
            except asyncio.CancelledError:
                # NOTE: Let the in-flight item finish; the rest of the batch stays `RECEIVED`
                self._stop_event.set()
                await batch
                raise

            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._config.poll_interval)

        _logger.info('Worker stopped')

    async def tick(self) -> int:
        """Process a single batch; return number of processed transactions"""
        started_at = time.time()
        if self._config.stale_after:
            await self.reclaim_stale()

        try:
            transactions = await self._store.select_received(self._config.batch_size)
        except StorageError as e:
            _logger.error('Failed to select batch, skipping tick: %s', e)
            return 0

        if transactions:
            _logger.info('Processing %s transactions', len(transactions))

        processed = 0
        for transaction in transactions:
            if self._stop_event.is_set():
                _logger.info('%s transactions left for the next run', len(transactions) - processed)
                break
            try:
                await self.process(transaction)
            except Exception as e:
                _logger.exception('Unexpected error while processing `%s`', transaction)
                await self._fail(transaction, str(e) or e.__class__.__name__)
            processed += 1

        Metrics.set_batch(processed, time.time() - started_at)
        return processed

    async def process(self, transaction: Transaction) -> TransactionStatus | None:
        """Drive transaction to a terminal status; return it or `None` if the item was skipped"""
        if not await self._transition(transaction, TransactionStatus.FETCHING):
            return None

        try:
            normalized = await self._fetch(transaction)
        except fetch_exceptions as e:
            _logger.warning('Failed to fetch `%s`: %s', transaction, e)
            return await self._fail(transaction, str(e))

        try:
            await self._store.transition(transaction.id, TransactionStatus.CONFIRMED, normalized=normalized)
        except StorageError as e:
            _logger.error('Failed to save `%s`: %s', transaction, e)
            return await self._fail(transaction, str(e))
        except InvalidTransitionError as e:
            _logger.error('Failed to confirm `%s`, skipping: %s', transaction, e)
            return None

        _logger.info('Transaction `%s` confirmed', transaction)
        return TransactionStatus.CONFIRMED

    async def reclaim_stale(self) -> int:
        """Fail transactions stuck in `FETCHING` longer than `stale_after` seconds"""
        older_than = timezone.now() - timedelta(seconds=self._config.stale_after)
        try:
            transactions = await self._store.select_stale(older_than, self._config.batch_size)
        except StorageError as e:
            _logger.error('Failed to select stale transactions: %s', e)
            return 0

        for transaction in transactions:
            _logger.warning('Transaction `%s` is stale', transaction)
            await self._fail(transaction, f'stale: stuck in FETCHING for more than {self._config.stale_after}s')
        return len(transactions)

    async def _fetch(self, transaction: Transaction) -> NormalizedTransaction:
        chain = self._registry.get(transaction.chain_id)
        client = await self._get_client(chain)

        transaction_data = await client.get_transaction_by_hash(transaction.transaction_hash)
        try:
            receipt_data: EvmNodeReceiptData | None = await client.get_transaction_receipt(
                transaction.transaction_hash
            )
        except NotFoundError as e:
            _logger.info('%s', e)
            receipt_data = None

        return normalize(transaction_data, receipt_data)

    async def _get_client(self, chain: ChainConfig) -> EvmNodeClient:
        if chain.chain_id not in self._clients:
            _logger.debug('Creating RPC client for chain %s (%s)', chain.chain_id, chain.name)
            client = self._client_factory(chain, self._http_config)
            await self._exit_stack.enter_async_context(client)
            self._clients[chain.chain_id] = client
        return self._clients[chain.chain_id]

    async def _fail(self, transaction: Transaction, error_reason: str) -> TransactionStatus | None:
        if not await self._transition(transaction, TransactionStatus.ERROR, error_reason):
            return None
        return TransactionStatus.ERROR

    async def _transition(
        self,
        transaction: Transaction,
        status: TransactionStatus,
        error_reason: str | None = None,
    ) -> bool:
        try:
            await self._store.transition(transaction.id, status, error_reason)
        except (StorageError, InvalidTransitionError) as e:
            _logger.error('Failed to move `%s` to %s, skipping: %s', transaction, status.value, e)
            return False
        return True
