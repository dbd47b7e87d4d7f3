from pydantic import BaseModel, Field
from typing import Optional
from gymledger.models.mod_membership import MembershipRequest, PaymentRecord

class MembershipRequestCreate(BaseModel):
    member_id: str
    plan: str = Field(description="Name of the membership plan being requested")

class PaymentCreate(BaseModel):
    member_id: str
    amount: float = Field(ge=0)
    membership: str = Field(description="Plan name, or a label such as 'Sessions' for session packs")
    sessions: Optional[int] = Field(
        default=None,
        ge=0,
        description="Sessions granted; defaults to the plan's session count"
    )
    idempotency_key: str = Field(
        min_length=1,
        description="Client generated key; resubmitting the same key never records a second payment"
    )

class ApprovalResult(BaseModel):
    request: MembershipRequest
    payment: Optional[PaymentRecord] = None
    remaining_sessions: Optional[int] = None
    total_sessions: Optional[int] = None
    duplicate: bool = False

class PaymentResult(BaseModel):
    payment: PaymentRecord
    sessions_delta: int = 0
    remaining_sessions: Optional[int] = None
    total_sessions: Optional[int] = None
    duplicate: bool = False
