import asyncio
import logging
import signal
import sys
import warnings
from collections.abc import Callable

import orjson
from pydantic_core import to_jsonable_python

from txnflow import env

_handler: logging.Handler | None = None


def set_up_logging() -> None:
    global _handler
    if _handler is not None:
        return

    root = logging.getLogger()
    handler = logging.StreamHandler(stream=sys.stdout)
    formatter: logging.Formatter

    if env.JSON_LOG:
        from pythonjsonlogger import jsonlogger

        formatter = jsonlogger.JsonFormatter(  # type: ignore[no-untyped-call]
            json_default=orjson.dumps,
            json_serializer=lambda *a, **kw: orjson.dumps(*a, default=to_jsonable_python).decode(),  # type: ignore[misc]
            reserved_attrs=set(jsonlogger.RESERVED_ATTRS) - {'message', 'name', 'levelname', 'created'} | {'taskName'},
        )
    else:
        formatter = logging.Formatter('%(levelname)-8s %(name)-20s %(message)s')

    handler.setFormatter(formatter)
    root.addHandler(handler)
    _handler = handler

    # NOTE: Nothing useful there
    logging.getLogger('tortoise').setLevel(logging.WARNING)

    logging.getLogger('txnflow').setLevel(logging.DEBUG if env.DEBUG else logging.INFO)


def set_up_process() -> None:
    """Set up interpreter process-wide state"""
    # NOTE: Format warnings as normal log messages
    logging.captureWarnings(True)
    warnings.formatwarning = lambda msg, *a, **kw: str(msg)


def set_up_signals(callback: Callable[[], None]) -> None:
    """Call `callback` on SIGINT and SIGTERM instead of interrupting the loop"""
    # NOTE: Skip for integration tests
    if env.TEST:
        return

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, callback)
