from fastapi import APIRouter, Depends, HTTPException
from gymledger.dependencies.dep_auth import get_current_user, get_current_admin
from gymledger.dependencies.dep_services import get_consistency_sync, get_ledger
from gymledger.models.mod_auth import AuthUser
from gymledger.schemas.sch_ledger import BalanceResponse, DriftResponse
from gymledger.services.svc_ledger import SessionLedger
from gymledger.services.svc_sync import ConsistencySync

router = APIRouter(
    prefix="/members",
    tags=["Members"],
    responses={404: {"description": "Not found"}},
)

@router.get('/{member_id}/balance', response_model=BalanceResponse)
def read_balance(
    member_id: str,
    ledger: SessionLedger = Depends(get_ledger),
    current_user: AuthUser = Depends(get_current_user)
):
    """
    Get a member's session balance.

    - Members can only view their own balance
    - Trainers and admins can view any balance
    """
    if not current_user.is_staff and current_user.id != member_id:
        raise HTTPException(
            status_code=403,
            detail="You can only view your own balance"
        )
    snapshot = ledger.read_balance(member_id)
    return BalanceResponse(
        member_id=snapshot.member_id,
        remaining_sessions=snapshot.remaining_sessions,
        total_sessions=snapshot.total_sessions,
        membership=snapshot.membership
    )

@router.post('/{member_id}/reconcile', response_model=DriftResponse)
def reconcile_member(
    member_id: str,
    sync: ConsistencySync = Depends(get_consistency_sync),
    current_admin: AuthUser = Depends(get_current_admin)
):
    """Re-read the authoritative balance and replace the cached one."""
    return sync.reconcile_member(member_id)
