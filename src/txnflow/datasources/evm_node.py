import logging
from itertools import count
from typing import Any

from pydantic import ValidationError

from txnflow.config import HttpConfig
from txnflow.config import ResolvedHttpConfig
from txnflow.exceptions import NotFoundError
from txnflow.exceptions import RPCProtocolError
from txnflow.exceptions import RPCTransportError
from txnflow.http import HTTPGateway
from txnflow.models.evm_node import EvmNodeReceiptData
from txnflow.models.evm_node import EvmNodeTransactionData


class EvmNodeClient(HTTPGateway):
    """JSON-RPC 2.0 client of a single EVM-compatible node"""

    _default_http_config = HttpConfig(
        request_timeout=10,
    )

    def __init__(self, url: str, http_config: HttpConfig | None = None) -> None:
        config = ResolvedHttpConfig.create(self._default_http_config, http_config)
        super().__init__(url, config)
        self._logger = logging.getLogger(__name__)
        self._request_ids = count(1)

    async def get_transaction_by_hash(self, hash: str) -> EvmNodeTransactionData:
        result = await self._jsonrpc_request('eth_getTransactionByHash', [hash])
        if result is None:
            raise NotFoundError('transaction', hash)
        return self._parse(EvmNodeTransactionData, result)

    async def get_transaction_receipt(self, hash: str) -> EvmNodeReceiptData:
        result = await self._jsonrpc_request('eth_getTransactionReceipt', [hash])
        if result is None:
            raise NotFoundError('receipt', hash)
        return self._parse(EvmNodeReceiptData, result)

    def _parse(self, type_: Any, result: Any) -> Any:
        if not isinstance(result, dict):
            raise RPCTransportError(f'unexpected result: {result!r}', self.url)
        try:
            return type_.from_json(result)
        except (KeyError, ValidationError) as e:
            raise RPCTransportError(f'malformed result: {e}', self.url) from e

    async def _jsonrpc_request(
        self,
        method: str,
        params: Any,
    ) -> Any:
        request_id = next(self._request_ids)
        request = {
            'jsonrpc': '2.0',
            'id': request_id,
            'method': method,
            'params': params,
        }
        self._logger.debug('%s %s (id %s)', method, params, request_id)

        data = await self.request(
            method='post',
            url='',
            json=request,
        )

        if not isinstance(data, dict):
            raise RPCTransportError(f'unexpected response: {data!r}', self.url)

        # NOTE: Error takes precedence over result
        if (error := data.get('error')) is not None:
            if isinstance(error, dict):
                raise RPCProtocolError(error.get('code', 0), error.get('message', ''), self.url)
            raise RPCProtocolError(0, str(error), self.url)
        return data.get('result')
