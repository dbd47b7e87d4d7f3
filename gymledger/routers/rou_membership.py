from fastapi import APIRouter, HTTPException, Depends
from gymledger.dependencies.dep_auth import get_current_user, get_current_admin
from gymledger.dependencies.dep_services import get_approval_workflow
from gymledger.models.mod_auth import AuthUser
from gymledger.models.mod_membership import MembershipRequest
from gymledger.schemas.sch_membership import ApprovalResult, MembershipRequestCreate
from gymledger.services.svc_approval import ApprovalWorkflow

router = APIRouter(
    prefix="/membership-requests",
    tags=["Membership requests"],
    responses={404: {"description": "Not found"}},
)

@router.post('/', response_model=MembershipRequest)
def create_request(
    request: MembershipRequestCreate,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_user: AuthUser = Depends(get_current_user)
):
    """
    Ask for a membership plan.

    - The plan's sessions and price are fixed on the request when it is made
    - Members can only request plans for themselves
    """
    if request.member_id != current_user.id:
        raise HTTPException(
            status_code=403,
            detail="You can only request memberships for yourself"
        )
    return workflow.create_request(request.member_id, request.plan)

@router.post('/{request_id}/approve', response_model=ApprovalResult)
def approve_request(
    request_id: str,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_admin: AuthUser = Depends(get_current_admin)
):
    """
    Approve a pending request: credit its sessions and record the payment.
    Approving twice credits once.
    """
    return workflow.approve(request_id, actor=current_admin)

@router.post('/{request_id}/reject', response_model=MembershipRequest)
def reject_request(
    request_id: str,
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
    current_admin: AuthUser = Depends(get_current_admin)
):
    return workflow.reject(request_id, actor=current_admin)
