"""
Error types raised by the bracket and wagering engine.

Every error carries the message shown to the caller and the HTTP status the
web layer answers with.
"""


class BracketError(Exception):
    """Base class for all locally detected failures."""

    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __repr__(self):
        return f"{type(self).__name__}(message={self.message!r}, status_code={self.status_code})"


# Client input errors

class InvalidBracketInput(BracketError):
    """Participant list is empty, has duplicates or uses a reserved name."""


class InvalidStatusTransition(BracketError):
    """Requested status or phase change is not allowed from the current state."""


class InvalidWinner(BracketError):
    """Winner is not one of the match's two participants."""


class InvalidSelection(BracketError):
    """Bet selection is not one of the current match's participants."""


class InvalidAmount(BracketError):
    """Bet amount is not a positive integer."""


class InvalidCredentials(BracketError):
    status_code = 401


# Business-rule rejections

class BettingClosed(BracketError):
    status_code = 409


class NoActiveMatch(BracketError):
    status_code = 409


class AdminBetForbidden(BracketError):
    status_code = 403


class DuplicateBet(BracketError):
    status_code = 409


class InsufficientFunds(BracketError):
    status_code = 402


class BonusUnavailable(BracketError):
    status_code = 409


# Lookup and ownership

class NotFound(BracketError):
    status_code = 404


class Forbidden(BracketError):
    status_code = 403
