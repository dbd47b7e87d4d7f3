from pydantic import BaseModel
from typing import Optional

class BalanceSnapshot(BaseModel):
    member_id: str
    remaining_sessions: int
    total_sessions: int
    membership: Optional[str] = None
    etag: Optional[str] = None

class LedgerResult(BaseModel):
    member_id: str
    key: str
    reason: str
    requested: int
    delta: int
    remaining_sessions: int
    total_sessions: int
    duplicate: bool = False

class EnrollmentSnapshot(BaseModel):
    class_id: str
    enrolled: int
    capacity: int
    etag: Optional[str] = None

    @property
    def available(self) -> int:
        return max(self.capacity - self.enrolled, 0)

class BalanceResponse(BaseModel):
    member_id: str
    remaining_sessions: int
    total_sessions: int
    membership: Optional[str] = None

class EnrollmentResponse(BaseModel):
    class_id: str
    enrolled: int
    capacity: int
    available: int

class DriftResponse(BaseModel):
    kind: str                           # 'member' or 'class'
    id: str
    field: str
    cached: Optional[int] = None
    authoritative: int

    @property
    def corrected(self) -> bool:
        return self.cached is not None and self.cached != self.authoritative
