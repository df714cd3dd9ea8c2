# NOTE: All imports except the basic ones are very lazy in this module. Let's keep it that way.
import asyncio
import atexit
import logging
from collections.abc import Callable
from collections.abc import Coroutine
from contextlib import suppress
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any
from typing import TypeVar
from typing import cast

import click
import uvloop

from txnflow import __version__
from txnflow import env

if TYPE_CHECKING:
    from txnflow.chains import ChainRegistry
    from txnflow.config import TxnflowConfig
    from txnflow.models import IngestionEvent
    from txnflow.models import Transaction

_logger = logging.getLogger(__name__)


def echo(message: str, err: bool = False, **styles: Any) -> None:
    with suppress(BrokenPipeError):
        click.secho(message, err=err, **styles)


def _print_help_atexit(error: Exception) -> None:
    """Prints a helpful error message after the traceback"""
    from txnflow.exceptions import Error

    def _print() -> None:
        if isinstance(error, Error):
            echo(error.help(), err=True)
        else:
            echo(Error.default_help(), err=True)

    atexit.register(_print)


def _load_env_files(env_file_args: list[str]) -> None:
    from dotenv import load_dotenv

    from txnflow.exceptions import ConfigurationError

    for arg in env_file_args:
        path = Path(arg)
        if not path.is_file():
            raise ConfigurationError(f'Env file not found: {path}')
        _logger.info('Applying env_file `%s`', path)
        load_dotenv(path, override=True)


def _dump(obj: Any) -> str:
    from txnflow.utils import json_dumps

    return json_dumps(obj).decode()


def _transaction_to_dict(transaction: 'Transaction') -> dict[str, Any]:
    return {
        'id': transaction.id,
        'transaction_hash': transaction.transaction_hash,
        'chain_id': transaction.chain_id,
        'status': transaction.status.value,
        'from_address': transaction.from_address,
        'to_address': transaction.to_address,
        'value': transaction.value,
        'block_number': transaction.block_number,
        'gas_used': transaction.gas_used,
        'error_reason': transaction.error_reason,
        'created_at': transaction.created_at,
        'updated_at': transaction.updated_at,
    }


def _event_to_dict(event: 'IngestionEvent') -> dict[str, Any]:
    return {
        'previous_status': event.previous_status.value if event.previous_status else None,
        'new_status': event.new_status.value,
        'reason': event.reason,
        'created_at': event.created_at,
    }


WrappedCommandT = TypeVar('WrappedCommandT', bound=Callable[..., Coroutine[Any, Any, None]])


@dataclass
class CLIContext:
    config: 'TxnflowConfig'
    registry: 'ChainRegistry'


def _cli_wrapper(fn: WrappedCommandT) -> WrappedCommandT:
    @wraps(fn)
    def wrapper(ctx: click.Context, *args: Any, **kwargs: Any) -> None:
        try:
            uvloop.run(fn(ctx, *args, **kwargs))
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        except Exception as e:
            _print_help_atexit(e)
            raise e

    return cast(WrappedCommandT, wrapper)


@click.group(context_settings={'max_content_width': 120})
@click.version_option(__version__)
@click.option(
    '--env-file',
    '-e',
    type=str,
    multiple=True,
    help='A path to .env file containing `KEY=value` strings.',
    default=[],
    metavar='PATH',
    envvar='TXNFLOW_ENV_FILE',
)
@click.pass_context
@_cli_wrapper
async def cli(ctx: click.Context, env_file: list[str]) -> None:
    """Ingest blockchain transactions submitted by hash."""
    from txnflow.chains import create_registry
    from txnflow.config import TxnflowConfig
    from txnflow.sys import set_up_logging
    from txnflow.sys import set_up_process

    set_up_process()
    # NOTE: Apply env files before reading any settings
    _load_env_files(env_file)
    env.read()
    set_up_logging()

    config = TxnflowConfig.from_env()

    if config.sentry_dsn and not env.TEST:
        from txnflow.sentry import init_sentry

        init_sentry(config.sentry_dsn)

    ctx.obj = CLIContext(
        config=config,
        registry=create_registry(config.infura_api_key, config.rpc_urls),
    )


@cli.command()
@click.pass_context
@_cli_wrapper
async def run(ctx: click.Context) -> None:
    """Run the ingestion worker.

    Execution can be gracefully stopped with `SIGINT` or `SIGTERM` signal; the transaction being processed is
    finished first.
    """
    from txnflow.database import tortoise_wrapper
    from txnflow.prometheus import start_exporter
    from txnflow.store import Store
    from txnflow.sys import set_up_signals
    from txnflow.worker import IngestionWorker

    config: TxnflowConfig = ctx.obj.config

    if config.metrics_port:
        start_exporter(config.metrics_port)

    async with tortoise_wrapper(config.database_url):
        async with IngestionWorker(
            store=Store(),
            registry=ctx.obj.registry,
            config=config.worker,
            http_config=config.http,
        ) as worker:
            set_up_signals(worker.stop)
            await worker.run()


@cli.group()
@click.pass_context
@_cli_wrapper
async def schema(ctx: click.Context) -> None:
    """Commands to manage database schema."""
    pass


@schema.command(name='init')
@click.pass_context
@_cli_wrapper
async def schema_init(ctx: click.Context) -> None:
    """Create missing tables and indexes.

    Existing tables are left intact.
    """
    from txnflow.database import generate_schema
    from txnflow.database import tortoise_wrapper

    config: TxnflowConfig = ctx.obj.config
    async with tortoise_wrapper(config.database_url):
        await generate_schema()

    _logger.info('Schema initialized')


@cli.command()
@click.argument('transaction_hash', type=str, metavar='HASH')
@click.option('--chain-id', '-n', type=int, required=True, help='Chain ID of the transaction.')
@click.pass_context
@_cli_wrapper
async def submit(ctx: click.Context, transaction_hash: str, chain_id: int) -> None:
    """Submit transaction hash for ingestion.

    Submitting the same hash twice returns the existing record.
    """
    from txnflow.database import tortoise_wrapper
    from txnflow.store import Store

    config: TxnflowConfig = ctx.obj.config
    registry: ChainRegistry = ctx.obj.registry
    # NOTE: Raises `UnsupportedChainError`
    registry.get(chain_id)

    async with tortoise_wrapper(config.database_url):
        transaction, created = await Store().submit(transaction_hash, chain_id)

    echo(_dump({**_transaction_to_dict(transaction), 'created': created}))


@cli.command()
@click.argument('transaction_hash', type=str, metavar='HASH')
@click.option('--chain-id', '-n', type=int, default=None, help='Chain ID of the transaction.')
@click.pass_context
@_cli_wrapper
async def show(ctx: click.Context, transaction_hash: str, chain_id: int | None) -> None:
    """Show transaction and its status history."""
    from txnflow.database import tortoise_wrapper
    from txnflow.exceptions import NotFoundError
    from txnflow.store import Store

    config: TxnflowConfig = ctx.obj.config
    store = Store()
    async with tortoise_wrapper(config.database_url):
        transaction = await store.get_by_hash(transaction_hash, chain_id)
        if transaction is None:
            raise NotFoundError('transaction', transaction_hash)
        events = await store.get_events(transaction.id)

    echo(
        _dump(
            {
                **_transaction_to_dict(transaction),
                'events': [_event_to_dict(e) for e in events],
            }
        )
    )


@cli.command(name='list')
@click.option('--from-address', type=str, default=None, help='Sender address.')
@click.option('--to-address', type=str, default=None, help='Recipient address.')
@click.option('--chain-id', '-n', type=int, default=None, help='Chain ID.')
@click.option('--status', '-s', type=str, default=None, help='Transaction status.')
@click.option('--block-min', type=int, default=None, help='Minimum block number.')
@click.option('--block-max', type=int, default=None, help='Maximum block number.')
@click.option('--limit', '-l', type=int, default=100, help='Max number of transactions (1..1000).')
@click.option('--offset', type=int, default=0, help='Number of transactions to skip.')
@click.pass_context
@_cli_wrapper
async def list_(
    ctx: click.Context,
    from_address: str | None,
    to_address: str | None,
    chain_id: int | None,
    status: str | None,
    block_min: int | None,
    block_max: int | None,
    limit: int,
    offset: int,
) -> None:
    """List transactions, newest first."""
    from txnflow.database import tortoise_wrapper
    from txnflow.exceptions import ConfigurationError
    from txnflow.models import TransactionStatus
    from txnflow.store import Store

    config: TxnflowConfig = ctx.obj.config
    try:
        status_ = TransactionStatus(status.upper()) if status else None
    except ValueError as e:
        raise ConfigurationError(f'Unknown status `{status}`') from e

    async with tortoise_wrapper(config.database_url):
        transactions = await Store().list_transactions(
            from_address=from_address,
            to_address=to_address,
            chain_id=chain_id,
            status=status_,
            block_number_min=block_min,
            block_number_max=block_max,
            limit=limit,
            offset=offset,
        )

    echo(_dump([_transaction_to_dict(t) for t in transactions]))


@cli.command()
@click.pass_context
@_cli_wrapper
async def stats(ctx: click.Context) -> None:
    """Show number of transactions per status."""
    from txnflow.database import tortoise_wrapper
    from txnflow.store import Store

    config: TxnflowConfig = ctx.obj.config
    async with tortoise_wrapper(config.database_url):
        counts = await Store().count_by_status()

    for status, count in counts.items():
        echo(f'{status.value:<10} {count}')


@cli.command()
@click.pass_context
@_cli_wrapper
async def chains(ctx: click.Context) -> None:
    """Show registered chains."""
    registry: ChainRegistry = ctx.obj.registry
    for chain_id in sorted(registry.list_supported()):
        chain = registry.get(chain_id)
        echo(f'{chain.chain_id:<8} {chain.family.value:<4} {chain.name}')
