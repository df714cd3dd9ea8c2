import asyncio
import logging
import platform
from typing import Any

import sentry_sdk
import sentry_sdk.consts
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sentry_sdk.integrations.atexit import AtexitIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from txnflow import __version__
from txnflow import env

_logger = logging.getLogger(__name__)


def before_send(
    event: dict[str, Any],
    hint: dict[str, Any],
) -> dict[str, Any] | None:
    # NOTE: Cancelled tasks and interrupts on shutdown
    if 'exc_info' in hint:
        exc_type = hint['exc_info'][0]
        if issubclass(exc_type, (asyncio.CancelledError, KeyboardInterrupt)):
            return None
    return event


def init_sentry(dsn: str, environment: str | None = None) -> None:
    _logger.info('Sentry is enabled: %s', dsn)

    if env.DEBUG:
        level, event_level, attach_stacktrace = logging.DEBUG, logging.WARNING, True
    else:
        level, event_level, attach_stacktrace = logging.INFO, logging.ERROR, False

    integrations = [
        AioHttpIntegration(),
        LoggingIntegration(
            level=level,
            event_level=event_level,
        ),
        # NOTE: Suppresses `atexit` notification
        AtexitIntegration(lambda _, __: None),
    ]
    if not environment:
        environment = 'tests' if env.TEST else 'local'

    sentry_sdk.init(
        dsn=dsn,
        integrations=integrations,
        attach_stacktrace=attach_stacktrace,
        before_send=before_send,
        release=__version__,
        environment=environment,
        server_name=platform.node(),
        # NOTE: Increase __repr__ length limit
        max_value_length=sentry_sdk.consts.DEFAULT_MAX_VALUE_LENGTH * 10,
    )

    tags = {
        'python': platform.python_version(),
        'os': f'{platform.system().lower()}-{platform.machine()}',
        'version': __version__,
    }
    _logger.debug('Sentry tags: %s', ', '.join(f'{k}={v}' for k, v in tags.items()))
    for tag, value in tags.items():
        sentry_sdk.set_tag(f'txnflow.{tag}', value)
