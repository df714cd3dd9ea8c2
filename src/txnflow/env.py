from os import getenv

from txnflow.exceptions import ConfigurationError


def get(key: str, default: str = '') -> str:
    return getenv(key) or default


def get_bool(key: str) -> bool:
    return (getenv(key) or '').lower() in ('1', 'y', 'yes', 't', 'true', 'on')


def get_int(key: str, default: int) -> int:
    value = getenv(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f'`{key}` must be an integer, got `{value}`') from e


def get_float(key: str, default: float) -> float:
    value = getenv(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f'`{key}` must be a number, got `{value}`') from e


def set_test() -> None:
    global TEST
    TEST = True


def read() -> None:
    """Re-read switches; called after `.env` files are applied"""
    global DEBUG, JSON_LOG, TEST
    DEBUG = get_bool('TXNFLOW_DEBUG')
    JSON_LOG = get_bool('TXNFLOW_JSON_LOG')
    TEST = TEST or get_bool('TXNFLOW_TEST')


DEBUG: bool = False
JSON_LOG: bool = False
TEST: bool = False

read()
