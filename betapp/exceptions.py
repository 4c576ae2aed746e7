"""Exceptions raised by the betting engine's infrastructure layer.

Business-rule failures never raise; they come back as a failed
:class:`betapp.entities.OperationResult`. The classes below are for
collaborator failures and programming errors, which propagate to the caller.
"""


class BetAppError(Exception):
    """Root of every exception defined by the betting application."""


class LedgerError(BetAppError):
    """The balance ledger could not apply an adjustment."""


class InsufficientFundsError(LedgerError):
    """A debit would have taken a balance below zero."""

    def __init__(self, user_id, requested: int, balance: int):
        self.user_id = user_id
        self.requested = requested
        self.balance = balance
        super().__init__(
            f"Balance of user {user_id} is {balance}, cannot debit {requested}"
        )


class InvalidTransitionError(BetAppError):
    """A round status change outside the lifecycle graph was attempted."""

    def __init__(self, round_id, current, target):
        self.round_id = round_id
        self.current = current
        self.target = target
        super().__init__(f"Round {round_id} cannot move from {current} to {target}")


class StoreNotReadyError(BetAppError):
    """A repository was used after :meth:`Database.close` disposed the engine."""


class OutcomeAlreadySetError(BetAppError):
    """A wager outcome was written a second time."""

    def __init__(self, wager_id, current, target):
        self.wager_id = wager_id
        self.current = current
        self.target = target
        super().__init__(f"Wager {wager_id} is already {current}, cannot mark {target}")
