import asyncio
import logging
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock
from unittest.mock import Mock

import pytest
from prometheus_client import REGISTRY
from tortoise import timezone

from tests import TX_HASH
from tests import in_memory_store
from tests import receipt_json
from tests import transaction_json
from txnflow.chains import create_registry
from txnflow.config import WorkerConfig
from txnflow.exceptions import NotFoundError
from txnflow.exceptions import RPCProtocolError
from txnflow.exceptions import RPCTransportError
from txnflow.exceptions import StorageError
from txnflow.models import Transaction
from txnflow.models import TransactionStatus
from txnflow.models.evm_node import EvmNodeReceiptData
from txnflow.models.evm_node import EvmNodeTransactionData
from txnflow.store import Store
from txnflow.worker import IngestionWorker
from txnflow.worker import normalize


def make_client(
    transaction: dict[str, Any] | Exception | None = None,
    receipt: dict[str, Any] | Exception | None = None,
) -> AsyncMock:
    client = AsyncMock()
    if isinstance(transaction, Exception):
        client.get_transaction_by_hash.side_effect = transaction
    else:
        client.get_transaction_by_hash.return_value = EvmNodeTransactionData.from_json(
            transaction or transaction_json()
        )
    if isinstance(receipt, Exception):
        client.get_transaction_receipt.side_effect = receipt
    else:
        client.get_transaction_receipt.return_value = EvmNodeReceiptData.from_json(receipt or receipt_json())
    return client


def make_worker(store: Store, client: AsyncMock, **config: Any) -> tuple[IngestionWorker, Mock]:
    factory = Mock(return_value=client)
    worker = IngestionWorker(
        store=store,
        registry=create_registry('secret'),
        config=WorkerConfig(**{'poll_interval': 0.01, **config}),
        client_factory=factory,
    )
    return worker, factory


async def statuses(store: Store, transaction: Transaction) -> list[TransactionStatus]:
    return [e.new_status for e in await store.get_events(transaction.id)]


def normalization_errors(field: str) -> float:
    return REGISTRY.get_sample_value('txnflow_normalization_errors_total', {'field': field}) or 0.0


async def test_transaction_confirmed() -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        client = make_client(receipt=receipt_json(status='0x1', gasUsed='0x5208'))
        worker, factory = make_worker(store, client)

        async with worker:
            assert await worker.tick() == 1

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.CONFIRMED
        assert transaction.gas_used == 21000
        assert transaction.value == '1000000000000000000'
        assert transaction.block_number == 6139707
        assert transaction.from_address == '0xa7d9ddbe1f17865597fbd27ec712455208b6b76d'
        assert transaction.to_address == '0xf02c1c8e6114b1dbe8937a39260b5b0a374432bb'
        assert transaction.error_reason is None
        assert await statuses(store, transaction) == [
            TransactionStatus.RECEIVED,
            TransactionStatus.FETCHING,
            TransactionStatus.CONFIRMED,
        ]

        client.get_transaction_by_hash.assert_awaited_once_with(TX_HASH)
        client.get_transaction_receipt.assert_awaited_once_with(TX_HASH)
        assert factory.call_args.args[0].chain_id == 1


async def test_transaction_not_found() -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        client = make_client(transaction=NotFoundError('transaction', TX_HASH))
        worker, _ = make_worker(store, client)

        async with worker:
            await worker.tick()

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.ERROR
        assert transaction.error_reason
        assert 'not found' in transaction.error_reason
        assert transaction.from_address is None
        assert transaction.value is None
        assert transaction.block_number is None
        assert await statuses(store, transaction) == [
            TransactionStatus.RECEIVED,
            TransactionStatus.FETCHING,
            TransactionStatus.ERROR,
        ]
        client.get_transaction_receipt.assert_not_awaited()


async def test_unsupported_chain() -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 999)
        client = make_client()
        worker, factory = make_worker(store, client)

        async with worker:
            await worker.tick()

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.ERROR
        assert '999' in (transaction.error_reason or '')
        events = await store.get_events(transaction.id)
        assert (events[-1].previous_status, events[-1].new_status) == (
            TransactionStatus.FETCHING,
            TransactionStatus.ERROR,
        )
        factory.assert_not_called()
        client.get_transaction_by_hash.assert_not_awaited()


@pytest.mark.parametrize(
    'error',
    [
        RPCProtocolError(-32000, 'header not found', 'http://node'),
        RPCTransportError('HTTP 502: bad gateway', 'http://node'),
    ],
)
async def test_transaction_rpc_error(error: Exception) -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        worker, _ = make_worker(store, make_client(transaction=error))

        async with worker:
            await worker.tick()

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.ERROR
        assert transaction.error_reason == str(error)


async def test_receipt_not_found() -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        client = make_client(receipt=NotFoundError('receipt', TX_HASH))
        worker, _ = make_worker(store, client)

        async with worker:
            await worker.tick()

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.CONFIRMED
        assert transaction.gas_used is None
        assert transaction.block_number == 6139707


async def test_receipt_transport_error() -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        client = make_client(receipt=RPCTransportError('connection reset', 'http://node'))
        worker, _ = make_worker(store, client)

        async with worker:
            await worker.tick()

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.ERROR
        assert transaction.error_reason == 'RPC call failed: connection reset'
        assert transaction.gas_used is None


async def test_partial_normalization(caplog: pytest.LogCaptureFixture) -> None:
    errors_before = normalization_errors('value')

    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        client = make_client(transaction=transaction_json(value='0xzz'))
        worker, _ = make_worker(store, client)

        with caplog.at_level(logging.WARNING, logger='txnflow.worker'):
            async with worker:
                await worker.tick()

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.CONFIRMED
        assert transaction.value is None
        assert transaction.block_number == 6139707
        assert transaction.gas_used == 21000

    assert normalization_errors('value') == errors_before + 1
    assert any('`value`' in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)


async def test_persistence_failure() -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        worker, _ = make_worker(store, make_client())
        store.update_normalized = AsyncMock(side_effect=StorageError('disk full'))  # type: ignore[method-assign]

        async with worker:
            await worker.tick()

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.ERROR
        assert transaction.error_reason == 'disk full'
        assert transaction.value is None
        assert transaction.block_number is None


async def test_claimed_transaction_is_skipped() -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        # NOTE: Claimed by another worker after the batch was selected
        await store.transition(transaction.id, TransactionStatus.FETCHING)
        client = make_client()
        worker, _ = make_worker(store, client)

        async with worker:
            assert await worker.process(transaction) is None

        assert await store.get_status(transaction.id) == TransactionStatus.FETCHING
        assert len(await store.get_events(transaction.id)) == 2
        client.get_transaction_by_hash.assert_not_awaited()


async def test_batch_size_and_order() -> None:
    async with in_memory_store() as store:
        now = timezone.now()
        submitted = []
        for i in range(3):
            transaction, _ = await store.submit(f'0x{i}', 1)
            await Transaction.filter(id=transaction.id).update(created_at=now - timedelta(minutes=i))
            submitted.append(transaction)
        client = make_client()
        worker, factory = make_worker(store, client, batch_size=2)

        async with worker:
            assert await worker.tick() == 2

        hashes = [call.args[0] for call in client.get_transaction_by_hash.await_args_list]
        assert hashes == ['0x2', '0x1']
        assert await store.get_status(submitted[0].id) == TransactionStatus.RECEIVED
        # NOTE: One client per chain
        factory.assert_called_once()


async def test_batch_query_failure() -> None:
    async with in_memory_store() as store:
        worker, _ = make_worker(store, make_client())
        store.select_received = AsyncMock(side_effect=StorageError('connection lost'))  # type: ignore[method-assign]

        async with worker:
            assert await worker.tick() == 0


async def test_stale_reclaim() -> None:
    async with in_memory_store() as store:
        transaction, _ = await store.submit(TX_HASH, 1)
        await store.transition(transaction.id, TransactionStatus.FETCHING)
        await Transaction.filter(id=transaction.id).update(updated_at=timezone.now() - timedelta(hours=2))
        worker, _ = make_worker(store, make_client(), stale_after=60)

        async with worker:
            await worker.tick()

        await transaction.refresh_from_db()
        assert transaction.status == TransactionStatus.ERROR
        assert (transaction.error_reason or '').startswith('stale')


async def test_stop_leaves_rest_of_batch() -> None:
    async with in_memory_store() as store:
        for i in range(3):
            await store.submit(f'0x{i}', 1)
        client = make_client()
        worker, _ = make_worker(store, client)

        async def fetch_and_stop(hash: str) -> EvmNodeTransactionData:
            worker.stop()
            return EvmNodeTransactionData.from_json(transaction_json(hash=hash))

        client.get_transaction_by_hash.side_effect = fetch_and_stop

        async with worker:
            await asyncio.wait_for(worker.run(), timeout=5)

        counts = await store.count_by_status()
        assert counts[TransactionStatus.CONFIRMED] == 1
        assert counts[TransactionStatus.RECEIVED] == 2


async def test_cancel_finishes_current_item() -> None:
    async with in_memory_store() as store:
        for i in range(2):
            await store.submit(f'0x{i}', 1)
        client = make_client()
        worker, _ = make_worker(store, client)
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_fetch(hash: str) -> EvmNodeTransactionData:
            started.set()
            await release.wait()
            return EvmNodeTransactionData.from_json(transaction_json(hash=hash))

        client.get_transaction_by_hash.side_effect = slow_fetch

        async with worker:
            task = asyncio.create_task(worker.run())
            await started.wait()
            task.cancel()
            release.set()
            with pytest.raises(asyncio.CancelledError):
                await task

        counts = await store.count_by_status()
        assert counts[TransactionStatus.CONFIRMED] == 1
        assert counts[TransactionStatus.RECEIVED] == 1
        assert counts[TransactionStatus.FETCHING] == 0


def test_normalize_pending_transaction() -> None:
    transaction = EvmNodeTransactionData.from_json(transaction_json(blockNumber=None, blockHash=None, to=None))

    normalized = normalize(transaction, None)

    assert normalized.block_number is None
    assert normalized.gas_used is None
    assert normalized.to_address is None
    assert normalized.value == '1000000000000000000'


async def submit_in_order(store: Store, *hashes: str) -> list[Transaction]:
    now = timezone.now()
    submitted = []
    for i, hash in enumerate(hashes):
        transaction, _ = await store.submit(hash, 1)
        await Transaction.filter(id=transaction.id).update(created_at=now + timedelta(minutes=i))
        submitted.append(transaction)
    return submitted


async def test_oversized_value_does_not_stop_run() -> None:
    errors_before = normalization_errors('value')

    async with in_memory_store() as store:
        huge, regular = await submit_in_order(store, '0x0', '0x1')
        client = make_client()
        worker, _ = make_worker(store, client)

        async def fetch(hash: str) -> EvmNodeTransactionData:
            if hash == '0x0':
                return EvmNodeTransactionData.from_json(transaction_json(hash=hash, value='0x' + 'f' * 4000))
            worker.stop()
            return EvmNodeTransactionData.from_json(transaction_json(hash=hash))

        client.get_transaction_by_hash.side_effect = fetch

        async with worker:
            await asyncio.wait_for(worker.run(), timeout=5)

        await huge.refresh_from_db()
        assert huge.status == TransactionStatus.CONFIRMED
        assert huge.value is None
        assert huge.block_number == 6139707

        await regular.refresh_from_db()
        assert regular.status == TransactionStatus.CONFIRMED
        assert regular.value == '1000000000000000000'

    assert normalization_errors('value') == errors_before + 1


async def test_unexpected_error_does_not_stop_batch(caplog: pytest.LogCaptureFixture) -> None:
    async with in_memory_store() as store:
        broken, regular = await submit_in_order(store, '0x0', '0x1')
        client = make_client()
        worker, _ = make_worker(store, client)

        async def fetch(hash: str) -> EvmNodeTransactionData:
            if hash == '0x0':
                raise ValueError('unexpected payload')
            return EvmNodeTransactionData.from_json(transaction_json(hash=hash))

        client.get_transaction_by_hash.side_effect = fetch

        with caplog.at_level(logging.ERROR, logger='txnflow.worker'):
            async with worker:
                assert await worker.tick() == 2

        await broken.refresh_from_db()
        assert broken.status == TransactionStatus.ERROR
        assert broken.error_reason == 'unexpected payload'
        assert await statuses(store, broken) == [
            TransactionStatus.RECEIVED,
            TransactionStatus.FETCHING,
            TransactionStatus.ERROR,
        ]
        assert await store.get_status(regular.id) == TransactionStatus.CONFIRMED

    assert any(r.exc_info for r in caplog.records if r.levelno == logging.ERROR)
