"""Registry of supported chains.

The registry is seeded once at startup from `KNOWN_CHAINS` and configured endpoint overrides, then passed to the
worker explicitly.
"""

import logging
from collections.abc import Mapping

from txnflow.config import ChainConfig
from txnflow.config import ChainFamily
from txnflow.exceptions import UnsupportedChainError

ETHEREUM_MAINNET = 1
POLYGON = 137
ARBITRUM_ONE = 42161

INFURA_MAINNET_URL = 'https://mainnet.infura.io/v3/{}'

KNOWN_CHAINS: tuple[ChainConfig, ...] = (
    ChainConfig(chain_id=POLYGON, name='Polygon', url='https://polygon-rpc.com'),
    ChainConfig(chain_id=ARBITRUM_ONE, name='Arbitrum One', url='https://arb1.arbitrum.io/rpc'),
)

_logger = logging.getLogger(__name__)


class ChainRegistry:
    """Mapping of chain ID to `ChainConfig`"""

    def __init__(self) -> None:
        self._chains: dict[int, ChainConfig] = {}

    def register(self, config: ChainConfig) -> None:
        """Insert or overwrite chain config"""
        if config.chain_id in self._chains:
            _logger.debug('Overwriting config of chain %s', config.chain_id)
        self._chains[config.chain_id] = config

    def get(self, chain_id: int) -> ChainConfig:
        try:
            return self._chains[chain_id]
        except KeyError as e:
            raise UnsupportedChainError(chain_id) from e

    def is_supported(self, chain_id: int) -> bool:
        return chain_id in self._chains

    def list_supported(self) -> list[int]:
        return list(self._chains)

    def __len__(self) -> int:
        return len(self._chains)


def create_registry(
    infura_api_key: str = '',
    rpc_urls: Mapping[int, str] | None = None,
) -> ChainRegistry:
    """Create registry of known networks with configured endpoint overrides applied"""
    registry = ChainRegistry()
    rpc_urls = rpc_urls or {}

    if infura_api_key:
        registry.register(
            ChainConfig(
                chain_id=ETHEREUM_MAINNET,
                name='Ethereum Mainnet',
                url=INFURA_MAINNET_URL.format(infura_api_key),
            )
        )
    elif ETHEREUM_MAINNET not in rpc_urls:
        _logger.warning('`INFURA_API_KEY` is not set; Ethereum Mainnet is not available')

    for config in KNOWN_CHAINS:
        registry.register(config)

    for chain_id, url in rpc_urls.items():
        if registry.is_supported(chain_id):
            name = registry.get(chain_id).name
        elif chain_id == ETHEREUM_MAINNET:
            name = 'Ethereum Mainnet'
        else:
            name = f'Chain {chain_id}'
        registry.register(
            ChainConfig(
                chain_id=chain_id,
                name=name,
                url=url,
                family=ChainFamily.EVM,
            )
        )

    _logger.info('%s chains registered: %s', len(registry), ', '.join(map(str, registry.list_supported())))
    return registry
