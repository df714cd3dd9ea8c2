import textwrap
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from txnflow.models import TransactionStatus

tab = ('_' * 80) + '\n\n'


def unindent(text: str) -> str:
    """Remove indentation from text"""
    return textwrap.dedent(text).strip()


def format_help(help: str) -> str:
    """Format help text"""
    return tab + unindent(help) + '\n'


class FrameworkException(AssertionError, RuntimeError):
    pass


class Error(ABC, FrameworkException):
    """Base class for _known_ exceptions in this module.

    Instances of this class should have a nice help message explaining the error and how to fix it.
    """

    def __str__(self) -> str:
        if not self.__doc__:
            raise NotImplementedError(f'{self.__class__.__name__} has no docstring')
        return self.__doc__ + ' -> ' + ' '.join(str(arg) for arg in self.args)

    def help(self) -> str:
        """Return a string containing a help message for this error."""
        return format_help(self._help())

    @classmethod
    def default_help(cls) -> str:
        return format_help(
            """
                An unexpected error has occurred! Most likely it's a bug.

                Please, report it along with the traceback above.
            """
        )

    @abstractmethod
    def _help(self) -> str: ...


@dataclass(repr=False)
class ConfigurationError(Error):
    """Environment configuration is invalid"""

    msg: str

    def _help(self) -> str:
        return f"""
            {self.msg}

            Check `TXNFLOW_*`, `DATABASE_URL` and `INFURA_API_KEY` environment variables.
        """


@dataclass(repr=False)
class UnsupportedChainError(Error):
    """Chain is not registered"""

    chain_id: int

    def __str__(self) -> str:
        return f'unsupported chain ID: {self.chain_id}'

    def _help(self) -> str:
        return f"""
            Chain `{self.chain_id}` has no registry entry.

            Set `TXNFLOW_RPC_URL_{self.chain_id}` to register an EVM-compatible endpoint for it.
        """


@dataclass(repr=False)
class RPCTransportError(Error):
    """Failed to reach the node"""

    msg: str
    url: str

    def __str__(self) -> str:
        return f'RPC call failed: {self.msg}'

    def _help(self) -> str:
        return f"""
            Request to `{self.url}` failed.

            {self.msg}

            Make sure the node endpoint is correct and reachable.
        """


@dataclass(repr=False)
class RPCProtocolError(Error):
    """Node returned a JSON-RPC error"""

    code: int
    message: str
    url: str

    def __str__(self) -> str:
        return f'RPC error {self.code}: {self.message}'

    def _help(self) -> str:
        return f"""
            `{self.url}` returned a JSON-RPC error.

              code: {self.code}
              message: {self.message}
        """


@dataclass(repr=False)
class NotFoundError(Error):
    """Node has no such object"""

    kind: str
    hash: str

    def __str__(self) -> str:
        if self.kind == 'receipt':
            return f'receipt not found (transaction may be pending): {self.hash}'
        return f'{self.kind} not found: {self.hash}'

    def _help(self) -> str:
        return f"""
            Node returned `null` for {self.kind} `{self.hash}`.

            Make sure the hash is submitted for the right chain.
        """


@dataclass(repr=False)
class MalformedHexError(Error):
    """Value is not a valid hex number"""

    value: str
    reason: str = 'invalid digits'

    def __str__(self) -> str:
        return f'failed to parse hex {self.value!r}: {self.reason}'

    def _help(self) -> str:
        return f"""
            Can't decode `{self.value}` ({self.reason}).
        """


@dataclass(repr=False)
class StorageError(Error):
    """Database operation failed"""

    msg: str

    def __str__(self) -> str:
        return self.msg

    def _help(self) -> str:
        return f"""
            {self.msg}

            Make sure `DATABASE_URL` is correct and the schema is created with `txnflow schema init`.
        """


@dataclass(repr=False)
class InvalidTransitionError(Error):
    """Illegal transaction status transition"""

    previous: 'TransactionStatus | None'
    new: 'TransactionStatus'

    def __str__(self) -> str:
        previous = self.previous.value if self.previous else None
        return f'illegal status transition: {previous} -> {self.new.value}'

    def _help(self) -> str:
        return f"""
            Transaction can't move from `{self.previous}` to `{self.new}`.

            Another worker has likely processed the same transaction.
        """
