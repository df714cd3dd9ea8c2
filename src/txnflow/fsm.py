"""Legal transitions of `TransactionStatus`.

`None` stands for a transaction which is not registered yet. `CONFIRMED` and `ERROR` are terminal; `PENDING`,
`FAILED` and `DROPPED` are reserved and never reached by the worker.
"""

from txnflow.exceptions import InvalidTransitionError
from txnflow.models import TransactionStatus

TRANSITIONS: dict[TransactionStatus | None, frozenset[TransactionStatus]] = {
    None: frozenset({TransactionStatus.RECEIVED}),
    TransactionStatus.RECEIVED: frozenset({TransactionStatus.FETCHING}),
    TransactionStatus.FETCHING: frozenset({TransactionStatus.CONFIRMED, TransactionStatus.ERROR}),
}

TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.CONFIRMED,
        TransactionStatus.ERROR,
    }
)


def can_transition(previous: TransactionStatus | None, new: TransactionStatus) -> bool:
    return new in TRANSITIONS.get(previous, frozenset())


def validate_transition(previous: TransactionStatus | None, new: TransactionStatus) -> None:
    """Raise `InvalidTransitionError` if `previous -> new` is not allowed"""
    if not can_transition(previous, new):
        raise InvalidTransitionError(previous, new)


def is_terminal(status: TransactionStatus) -> bool:
    return status in TERMINAL_STATUSES
