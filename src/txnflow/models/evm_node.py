from typing import Any

from pydantic.dataclasses import dataclass


@dataclass(frozen=True)
class EvmNodeTransactionData:
    """`eth_getTransactionByHash` result; quantities are kept as hex strings"""

    hash: str
    from_: str | None
    to: str | None
    value: str | None
    gas: str | None
    gas_price: str | None
    input: str | None
    nonce: str | None
    block_hash: str | None
    block_number: str | None
    transaction_index: str | None

    @classmethod
    def from_json(cls, transaction_json: dict[str, Any]) -> 'EvmNodeTransactionData':
        # NOTE: `to` is null for contract creation, block fields are null until mined
        return cls(
            hash=transaction_json['hash'],
            from_=transaction_json.get('from'),
            to=transaction_json.get('to'),
            value=transaction_json.get('value'),
            gas=transaction_json.get('gas'),
            gas_price=transaction_json.get('gasPrice'),
            input=transaction_json.get('input'),
            nonce=transaction_json.get('nonce'),
            block_hash=transaction_json.get('blockHash'),
            block_number=transaction_json.get('blockNumber'),
            transaction_index=transaction_json.get('transactionIndex'),
        )


@dataclass(frozen=True)
class EvmNodeReceiptData:
    """`eth_getTransactionReceipt` result; quantities are kept as hex strings"""

    transaction_hash: str
    block_hash: str | None
    block_number: str | None
    gas_used: str | None
    cumulative_gas_used: str | None
    status: str | None

    @classmethod
    def from_json(cls, receipt_json: dict[str, Any]) -> 'EvmNodeReceiptData':
        return cls(
            transaction_hash=receipt_json['transactionHash'],
            block_hash=receipt_json.get('blockHash'),
            block_number=receipt_json.get('blockNumber'),
            gas_used=receipt_json.get('gasUsed'),
            cumulative_gas_used=receipt_json.get('cumulativeGasUsed'),
            status=receipt_json.get('status'),
        )

    @property
    def success(self) -> bool | None:
        # NOTE: Pre-Byzantium receipts have `root` instead of `status`
        if self.status is None:
            return None
        return self.status == '0x1'


@dataclass(frozen=True, kw_only=True)
class NormalizedTransaction:
    """Decoded fields written to `Transaction` on confirmation"""

    from_address: str | None = None
    to_address: str | None = None
    value: str | None = None
    block_number: int | None = None
    gas_used: int | None = None
