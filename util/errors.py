# util/errors.py
from typing import Optional
from fastapi import HTTPException, status
from util.enums import ErrorMessage


class AppError(HTTPException):
    # Flow: raise AppError to short-circuit with a typed status & message.
    def __init__(
        self,
        message: str,
        http_status: int = status.HTTP_400_BAD_REQUEST,
        code: str = "BAD_REQUEST",
    ) -> None:
        self.code = code
        self.message = message
        super().__init__(status_code=http_status, detail=message)

    @classmethod
    def of(cls, error: ErrorMessage) -> "AppError":
        return cls(error.value.message, error.value.http_status, error.name)

    def body(self) -> dict:
        return {"ok": False, "error": self.code, "message": self.message}


class AdmissionRejected(AppError):
    """
    A claim request the caller may retry later (rate limit, balance, cap)
    or that is already in flight (duplicate).
    """

    def __init__(
        self,
        error: ErrorMessage,
        message: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(
            message or error.value.message, error.value.http_status, error.name
        )

    def body(self) -> dict:
        out = super().body()
        if self.retry_after is not None:
            out["retryAfter"] = self.retry_after
        return out


class DisbursementError(Exception):
    """Base for anything that stops a claim from being paid on this attempt."""


class TransientDisbursementError(DisbursementError):
    pass


class PermanentDisbursementError(DisbursementError):
    # Retrying cannot help (bad recipient, non-positive amount).
    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(f"{code}: {message}")
