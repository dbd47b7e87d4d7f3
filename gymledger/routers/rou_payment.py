from fastapi import APIRouter, Depends
from gymledger.dependencies.dep_auth import get_current_admin
from gymledger.dependencies.dep_services import get_approval_workflow
from gymledger.models.mod_auth import AuthUser
from gymledger.schemas.sch_membership import PaymentCreate, PaymentResult
from gymledger.services.svc_approval import ApprovalWorkflow

router = APIRouter(
    prefix="/payments",
    tags=["Payments"],
    responses={404: {"description": "Not found"}},
)

@router.post('/', response_model=PaymentResult)
def record_payment(
    payment: PaymentCreate,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_admin: AuthUser = Depends(get_current_admin)
):
    """
    Record a payment taken at the desk and grant its sessions.

    - Resubmitting the same idempotency_key returns the original payment
    - sessions defaults to the session count of the named plan
    """
    return workflow.record_payment(payment)

@router.post('/{payment_id}/cancel', response_model=PaymentResult)
def cancel_payment(
    payment_id: str,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_admin: AuthUser = Depends(get_current_admin)
):
    """
    Cancel a completed payment and take back the sessions it granted.
    The balance never goes below zero; cancelling twice changes nothing.
    """
    return workflow.cancel_payment(payment_id, actor=current_admin)
