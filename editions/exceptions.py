"""Edition Engine Exceptions."""
from typing import Optional


class EditionError(Exception):
    """Base class for every expected business error of the engine.

    Each subclass carries a stable ``code`` (used in result objects and
    API payloads) and the HTTP ``status`` the handlers answer with.
    """
    code: str = 'edition_error'
    status: int = 400

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class OutOfStock(EditionError):
    """No units left to sell."""
    code = 'out_of_stock'
    status = 409


class OpenLimitReached(EditionError):
    """The mystery box open limit was reached."""
    code = 'open_limit_reached'
    status = 409


class AlreadyOpened(EditionError):
    """This mystery box was already opened."""
    code = 'already_opened'
    status = 409


class ExhaustedPoolError(EditionError):
    """Every item of the mystery box pool is exhausted."""
    code = 'exhausted_pool'
    status = 409


class InvalidTransition(EditionError):
    """Status transition is not allowed."""
    code = 'invalid_transition'
    status = 409


class OwnershipMismatch(EditionError):
    """Edition is not held by the expected owner."""
    code = 'ownership_mismatch'
    status = 409


class SelfTransactionError(EditionError):
    """Cannot trade an edition with yourself."""
    code = 'self_transaction'
    status = 400


class Unauthorized(EditionError):
    """Caller is not allowed to perform this operation."""
    code = 'unauthorized'
    status = 403


class NotFound(EditionError):
    """Collection or edition not found."""
    code = 'not_found'
    status = 404


class NotPublished(EditionError):
    """Collection is not on sale."""
    code = 'not_published'
    status = 409


class InvalidRequest(EditionError):
    """Request is not valid for this collection."""
    code = 'invalid_request'
    status = 400


class ReservationExpired(EditionError):
    """Reservation expired and the unit is no longer available."""
    code = 'reservation_expired'
    status = 409
