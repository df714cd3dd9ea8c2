"""Clients of chain nodes"""

from txnflow.datasources.evm_node import EvmNodeClient

__all__ = ('EvmNodeClient',)
