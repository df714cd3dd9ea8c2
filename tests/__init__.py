from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from tortoise import Tortoise

from txnflow import env
from txnflow.database import tortoise_wrapper
from txnflow.store import Store

env.set_test()


TX_HASH = '0x88df016429689c079f3b2f6ad39fa052532c56795b733da78a91ebe6a713944b'


@asynccontextmanager
async def in_memory_store() -> AsyncIterator[Store]:
    async with tortoise_wrapper('sqlite://:memory:'):
        await Tortoise.generate_schemas()
        yield Store()


def transaction_json(**overrides: Any) -> dict[str, Any]:
    transaction = {
        'hash': TX_HASH,
        'from': '0xa7d9ddbe1f17865597fbd27ec712455208b6b76d',
        'to': '0xf02c1c8e6114b1dbe8937a39260b5b0a374432bb',
        'value': '0xde0b6b3a7640000',
        'gas': '0x5208',
        'gasPrice': '0x4a817c800',
        'input': '0x',
        'nonce': '0x15',
        'blockHash': '0x1d59ff54b1eb26b013ce3cb5fc9dab3705b415a67127a003c3e61eb445bb8df2',
        'blockNumber': '0x5daf3b',
        'transactionIndex': '0x41',
    }
    transaction.update(overrides)
    return transaction


def receipt_json(**overrides: Any) -> dict[str, Any]:
    receipt = {
        'transactionHash': TX_HASH,
        'blockHash': '0x1d59ff54b1eb26b013ce3cb5fc9dab3705b415a67127a003c3e61eb445bb8df2',
        'blockNumber': '0x5daf3b',
        'gasUsed': '0x5208',
        'cumulativeGasUsed': '0x33bc',
        'status': '0x1',
    }
    receipt.update(overrides)
    return receipt
