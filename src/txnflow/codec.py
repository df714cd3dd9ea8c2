"""Conversions of chain-native hex quantities.

Nodes return every integer as a `0x`-prefixed hex string. Amounts in wei routinely exceed 64 bits, so
`value` is kept as a decimal string while block numbers and gas fit into `BIGINT` columns.
"""

import re

from txnflow.exceptions import MalformedHexError

HEX_PREFIX = '0x'
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_hex_re = re.compile(r'[+-]?[0-9a-fA-F]+')


def _strip(value: str) -> str:
    return value.removeprefix(HEX_PREFIX)


def hex_to_int(value: str) -> int:
    """Decode hex string of arbitrary length; empty string is zero"""
    digits = _strip(value)
    if not digits:
        return 0
    # NOTE: `int()` alone accepts a second prefix, underscores and whitespace
    if not _hex_re.fullmatch(digits):
        raise MalformedHexError(value)
    return int(digits, 16)


def hex_to_int64(value: str) -> int:
    """Decode hex string into signed 64-bit integer; empty string is zero"""
    result = hex_to_int(value)
    if not INT64_MIN <= result <= INT64_MAX:
        raise MalformedHexError(value, 'out of int64 range')
    return result


def hex_to_decimal(value: str) -> str:
    """Decode hex string into decimal string without precision loss"""
    result = hex_to_int(value)
    # NOTE: `str()` is capped by `sys.get_int_max_str_digits()`
    try:
        return str(result)
    except ValueError as e:
        raise MalformedHexError(value, 'too large') from e
