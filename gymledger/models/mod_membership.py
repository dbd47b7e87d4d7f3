from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from enum import Enum

class RequestStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"

class PaymentStatus(str, Enum):
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

class PaymentSource(str, Enum):
    APPROVAL = "approval"
    MANUAL = "manual"

class MembershipPlan(BaseModel):
    id: str
    name: str
    sessions: int
    price: float
    active: bool = True
    description: Optional[str] = None

class MembershipRequest(BaseModel):
    id: str
    member_id: str
    member: Optional[str] = None        # member display name
    email: Optional[str] = None
    type: str                           # plan name
    sessions: int                       # snapshot of the plan at request time
    price: Optional[float] = None       # snapshot; older requests may lack it
    date: datetime
    status: RequestStatus = RequestStatus.PENDING
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PaymentRecord(BaseModel):
    id: str
    member: str
    member_id: Optional[str] = None     # older records only carry the name
    amount: float
    membership: str
    sessions: Optional[int] = None      # sessions granted with this payment
    source: PaymentSource = PaymentSource.MANUAL
    date: datetime
    status: PaymentStatus = PaymentStatus.COMPLETED
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True
