# model/event.py
from pydantic import BaseModel
from util.enums import AuditEventType


class AuditEvent(BaseModel):
    type: AuditEventType
    at: int
    day: str | None = None
    claimId: str | None = None
    wallet: str | None = None
    token: str | None = None
    amount: int | None = None
    transactionRef: str | None = None
    message: str | None = None
