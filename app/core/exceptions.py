"""
Domain error taxonomy for the loan lifecycle and payment reconciliation engine.

Services raise these; ``register_exception_handlers`` turns them into JSON
responses so that callers can decide which actions are still valid.
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class LendingError(Exception):
    """Base class for all lending domain errors"""
    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.message)


class ValidationError(LendingError):
    """Loan terms or amounts are invalid"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class SelfLoanError(LendingError):
    """Lender and borrower must be different users"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class CounterpartyNotFoundError(LendingError):
    """Counterparty could not be found"""
    status_code = status.HTTP_404_NOT_FOUND


class NotFoundError(LendingError):
    """Record not found"""
    status_code = status.HTTP_404_NOT_FOUND


class UnauthorizedPartyError(LendingError):
    """Actor is not entitled to perform this action"""
    status_code = status.HTTP_403_FORBIDDEN


class InvalidStateError(LendingError):
    """Action is not allowed in the current state"""
    status_code = status.HTTP_409_CONFLICT


class SignatureMismatchError(LendingError):
    """Signature must match your full name"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class AmountOutOfRangeError(LendingError):
    """Payment amount is out of range"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConcurrencyConflictError(LendingError):
    """The record was modified concurrently, please retry"""
    status_code = status.HTTP_409_CONFLICT
    retryable = True


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "error": exc.__class__.__name__,
            "retryable": exc.retryable,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LendingError, lending_error_handler)
