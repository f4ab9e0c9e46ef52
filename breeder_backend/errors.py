"""
Domain errors for the transfer subsystem.

Each error is an HTTPException so service code can raise it directly, the
same way the rest of the backend raises HTTP errors from services. The
`kind` is stable and returned to clients next to the message.
"""

from fastapi import HTTPException
from fastapi.responses import JSONResponse


class TransferError(HTTPException):
    status_code = 400
    kind = "TransferError"

    def __init__(self, message: str):
        super().__init__(status_code=self.status_code, detail=message)
        self.message = message


class NotFound(TransferError):
    """Transfer, animal or account missing."""
    status_code = 404
    kind = "NotFound"


class PreconditionFailed(TransferError):
    """Wrong owner, already sold/purchased, self-transfer, duplicate pending offer."""
    status_code = 422
    kind = "PreconditionFailed"


class Unauthorized(TransferError):
    """Actor is not the addressed party."""
    status_code = 403
    kind = "Unauthorized"


class InvalidState(TransferError):
    """Operation on a transfer that is no longer pending."""
    status_code = 409
    kind = "InvalidState"


class Conflict(InvalidState):
    """A concurrent status mutation won the race."""
    kind = "Conflict"


async def transfer_error_handler(request, exc: TransferError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "kind": exc.kind},
    )
