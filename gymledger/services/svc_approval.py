from azure.cosmos import ContainerProxy
from typing import Callable, Optional
from datetime import datetime
import uuid
from gymledger.configuration.config import Config
from gymledger.configuration.database import (
    DocumentExists,
    create_document,
    query_documents,
    read_document,
    update_document
)
from gymledger.configuration.monitor import log_event, log_exception, log_warning, start_span
from gymledger.models.mod_auth import AuthUser
from gymledger.models.mod_member import Member
from gymledger.models.mod_membership import (
    MembershipPlan,
    MembershipRequest,
    PaymentRecord,
    PaymentSource,
    PaymentStatus,
    RequestStatus
)
from gymledger.schemas.sch_membership import ApprovalResult, PaymentCreate, PaymentResult
from gymledger.services.svc_errors import InvalidTransition, NotFound, TooManyPendingRequests
from gymledger.services.svc_ledger import SessionLedger
from gymledger.validators.val_booking import BookingValidator

PAYMENT_NAMESPACE = uuid.UUID("0b7e4f7a-2c1d-4e57-8f3a-91d6c2a4e815")
APPROVAL_PAYMENT_PREFIX = "approval-"

PLAN_BY_NAME_QUERY = "SELECT * FROM c WHERE c.name = @name"
MEMBER_BY_NAME_QUERY = "SELECT * FROM c WHERE c.name = @name"
MEMBER_REQUESTS_QUERY = (
    "SELECT * FROM c WHERE c.member_id = @member_id AND c.status = @status"
)


class ApprovalWorkflow:
    """
    Turns membership requests and manual payments into session grants, and
    reverses the grant when a payment is cancelled.

    Approval is two-phase: the request's status flip is the commit point,
    then settlement (ledger credit plus payment record) runs with keys and ids
    derived from the request id. Settlement is safe to run again, so a
    retried approve finishes an interrupted one instead of paying twice.
    """

    def __init__(
        self,
        requests: ContainerProxy,
        payments: ContainerProxy,
        plans: ContainerProxy,
        members: ContainerProxy,
        ledger: SessionLedger,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.requests = requests
        self.payments = payments
        self.plans = plans
        self.members = members
        self.ledger = ledger
        self.clock = clock or BookingValidator._get_current_time

    @staticmethod
    def approval_key(request_id: str) -> str:
        return f"approval:{request_id}"

    @staticmethod
    def approval_payment_id(request_id: str) -> str:
        return f"{APPROVAL_PAYMENT_PREFIX}{request_id}"

    @staticmethod
    def grant_key(payment_id: str) -> str:
        return f"payment:{payment_id}:grant"

    @staticmethod
    def reversal_key(payment_id: str) -> str:
        return f"payment:{payment_id}:reversal"

    def get_plan(self, name: str) -> Optional[MembershipPlan]:
        items = query_documents(self.plans, PLAN_BY_NAME_QUERY, [{"name": "@name", "value": name}])
        if not items:
            return None
        return MembershipPlan(**items[0])

    def _read_member(self, member_id: str) -> Member:
        doc = read_document(self.members, member_id)
        if doc is None:
            raise NotFound("Member", member_id)
        return Member(**doc)

    def create_request(self, member_id: str, plan_name: str) -> MembershipRequest:
        """Open a request, snapshotting the plan's sessions and price as they are today."""
        now = self.clock()
        properties = {"member_id": member_id, "plan": plan_name}
        try:
            with start_span("create_membership_request", attributes=properties):
                member = self._read_member(member_id)
                plan = self.get_plan(plan_name)
                if plan is None or not plan.active:
                    raise NotFound("Membership plan", plan_name)

                pending = query_documents(self.requests, MEMBER_REQUESTS_QUERY, [
                    {"name": "@member_id", "value": member_id},
                    {"name": "@status", "value": RequestStatus.PENDING.value}
                ])
                if len(pending) >= Config.MAX_PENDING_REQUESTS:
                    raise TooManyPendingRequests(Config.MAX_PENDING_REQUESTS)

                request = MembershipRequest(
                    id=str(uuid.uuid4()),
                    member_id=member_id,
                    member=member.name,
                    email=member.email,
                    type=plan.name,
                    sessions=plan.sessions,
                    price=plan.price,
                    date=now
                )
                create_document(self.requests, request.model_dump(mode="json"))
                log_event("Membership request created", {
                    **properties,
                    "request_id": request.id,
                    "sessions": request.sessions
                })
                return request
        except Exception as e:
            log_exception(e, {"operation": "create_membership_request", **properties})
            raise

    def _request_price(self, request: MembershipRequest) -> float:
        if request.price is not None:
            return request.price
        plan = self.get_plan(request.type)
        if plan is None:
            raise NotFound("Membership plan", request.type)
        log_warning("Request has no price snapshot, using current plan price", {
            "request_id": request.id,
            "plan": request.type,
            "price": plan.price
        })
        return plan.price

    def approve(self, request_id: str, actor: Optional[AuthUser] = None) -> ApprovalResult:
        now = self.clock()
        properties = {"request_id": request_id}
        try:
            with start_span("approve_membership_request", attributes=properties):
                log_event("Approve membership request started", properties)
                doc = read_document(self.requests, request_id)
                if doc is None:
                    raise NotFound("Membership request", request_id)
                request = MembershipRequest(**doc)
                # Only a pending request needs pricing before it commits.
                amount = self._request_price(request) if request.status == RequestStatus.PENDING else None

                committed = False

                def approve_request(current: dict) -> bool:
                    nonlocal committed
                    status = RequestStatus(current["status"])
                    if status == RequestStatus.APPROVED:
                        return False
                    if status != RequestStatus.PENDING:
                        raise InvalidTransition("Membership request", status.value, RequestStatus.APPROVED.value)
                    current["status"] = RequestStatus.APPROVED.value
                    current["resolved_at"] = now.isoformat()
                    committed = True
                    return True

                doc = update_document(self.requests, request_id, approve_request, "Membership request")
                result = self._settle_approval(MembershipRequest(**doc), amount, now, duplicate=not committed)
                log_event("Membership request approved", {
                    **properties,
                    "member_id": result.request.member_id,
                    "sessions": result.request.sessions,
                    "remaining_sessions": result.remaining_sessions,
                    "duplicate": result.duplicate,
                    "actor_id": actor.id if actor else None
                })
                return result
        except Exception as e:
            log_exception(e, {"operation": "approve_membership_request", **properties})
            raise

    def _settle_approval(self, request: MembershipRequest, amount: Optional[float], now: datetime,
                         duplicate: bool) -> ApprovalResult:
        # Sessions come from the snapshot on the request, never the live plan.
        if request.sessions > 0:
            self.ledger.credit(
                request.member_id,
                request.sessions,
                "approval",
                self.approval_key(request.id),
                lifetime=True
            )

        payment_id = self.approval_payment_id(request.id)
        existing = read_document(self.payments, payment_id)
        if existing is not None:
            payment = PaymentRecord(**existing)
        else:
            if amount is None:
                amount = self._request_price(request)
            member_name = request.member or self._read_member(request.member_id).name
            payment = PaymentRecord(
                id=payment_id,
                member=member_name,
                member_id=request.member_id,
                amount=amount,
                membership=request.type,
                sessions=request.sessions,
                source=PaymentSource.APPROVAL,
                date=now
            )
            try:
                create_document(self.payments, payment.model_dump(mode="json"))
            except DocumentExists:
                payment = PaymentRecord(**read_document(self.payments, payment_id))

        balance = self.ledger.read_balance(request.member_id)
        return ApprovalResult(
            request=request,
            payment=payment,
            remaining_sessions=balance.remaining_sessions,
            total_sessions=balance.total_sessions,
            duplicate=duplicate
        )

    def reject(self, request_id: str, actor: Optional[AuthUser] = None) -> MembershipRequest:
        now = self.clock()
        try:
            with start_span("reject_membership_request", attributes={"request_id": request_id}):
                def reject_request(current: dict) -> bool:
                    status = RequestStatus(current["status"])
                    if status == RequestStatus.REJECTED:
                        return False
                    if status != RequestStatus.PENDING:
                        raise InvalidTransition("Membership request", status.value, RequestStatus.REJECTED.value)
                    current["status"] = RequestStatus.REJECTED.value
                    current["resolved_at"] = now.isoformat()
                    return True

                request = MembershipRequest(
                    **update_document(self.requests, request_id, reject_request, "Membership request")
                )
                log_event("Membership request rejected", {
                    "request_id": request_id,
                    "member_id": request.member_id,
                    "actor_id": actor.id if actor else None
                })
                return request
        except Exception as e:
            log_exception(e, {"operation": "reject_membership_request", "request_id": request_id})
            raise

    def record_payment(self, data: PaymentCreate) -> PaymentResult:
        """Manual payment entry. Resubmitting the same idempotency key returns the first result."""
        now = self.clock()
        payment_id = str(uuid.uuid5(PAYMENT_NAMESPACE, data.idempotency_key))
        properties = {"payment_id": payment_id, "member_id": data.member_id}
        try:
            with start_span("record_payment", attributes=properties):
                member = self._read_member(data.member_id)
                sessions = data.sessions
                if sessions is None:
                    plan = self.get_plan(data.membership)
                    if plan is None:
                        raise NotFound("Membership plan", data.membership)
                    sessions = plan.sessions

                duplicate = False
                payment = PaymentRecord(
                    id=payment_id,
                    member=member.name,
                    member_id=data.member_id,
                    amount=data.amount,
                    membership=data.membership,
                    sessions=sessions,
                    source=PaymentSource.MANUAL,
                    date=now
                )
                try:
                    create_document(self.payments, payment.model_dump(mode="json"))
                except DocumentExists:
                    payment = PaymentRecord(**read_document(self.payments, payment_id))
                    duplicate = True

                delta = 0
                if payment.status == PaymentStatus.COMPLETED and payment.sessions:
                    grant = self.ledger.credit(
                        data.member_id,
                        payment.sessions,
                        "payment",
                        self.grant_key(payment_id),
                        lifetime=True
                    )
                    delta = 0 if grant.duplicate else grant.delta

                balance = self.ledger.read_balance(data.member_id)
                log_event("Payment recorded", {**properties, "sessions": delta, "duplicate": duplicate})
                return PaymentResult(
                    payment=payment,
                    sessions_delta=delta,
                    remaining_sessions=balance.remaining_sessions,
                    total_sessions=balance.total_sessions,
                    duplicate=duplicate
                )
        except Exception as e:
            log_exception(e, {"operation": "record_payment", **properties})
            raise

    def _granted_sessions(self, payment: PaymentRecord) -> int:
        if payment.sessions is not None:
            return payment.sessions
        # Older records only name the plan; its definition may have changed since.
        plan = self.get_plan(payment.membership)
        if plan is None:
            raise NotFound("Membership plan", payment.membership)
        log_warning("Payment has no session snapshot, using current plan", {
            "payment_id": payment.id,
            "plan": payment.membership,
            "sessions": plan.sessions
        })
        return plan.sessions

    def _payment_member_id(self, payment: PaymentRecord) -> str:
        if payment.member_id:
            return payment.member_id
        matches = query_documents(self.members, MEMBER_BY_NAME_QUERY, [{"name": "@name", "value": payment.member}])
        if len(matches) != 1:
            raise NotFound("Member", payment.member)
        return matches[0]["id"]

    def _grant_key(self, doc: dict) -> Optional[str]:
        """Ledger key of the grant that accompanied a payment, or None for records that predate keys."""
        if "source" not in doc:
            return None
        if doc["source"] == PaymentSource.APPROVAL.value and doc["id"].startswith(APPROVAL_PAYMENT_PREFIX):
            return self.approval_key(doc["id"][len(APPROVAL_PAYMENT_PREFIX):])
        return self.grant_key(doc["id"])

    def cancel_payment(self, payment_id: str, actor: Optional[AuthUser] = None) -> PaymentResult:
        """
        Cancel a completed payment and take back the sessions it granted,
        never below zero. Calling it again on a cancelled payment changes nothing.
        """
        now = self.clock()
        properties = {"payment_id": payment_id}
        try:
            with start_span("cancel_payment", attributes=properties):
                log_event("Cancel payment started", properties)
                doc = read_document(self.payments, payment_id)
                if doc is None:
                    raise NotFound("Payment", payment_id)
                payment = PaymentRecord(**doc)
                if payment.status == PaymentStatus.COMPLETED:
                    sessions = self._granted_sessions(payment)
                    member_id = self._payment_member_id(payment)
                else:
                    # Cancelled already: the cancellation stored both values.
                    sessions, member_id = payment.sessions, payment.member_id

                cancelled_now = False

                def cancel(current: dict) -> bool:
                    nonlocal cancelled_now
                    if current["status"] == PaymentStatus.CANCELLED.value:
                        return False
                    if current["status"] != PaymentStatus.COMPLETED.value:
                        raise InvalidTransition("Payment", current["status"], PaymentStatus.CANCELLED.value)
                    current["status"] = PaymentStatus.CANCELLED.value
                    current["cancelled_at"] = now.isoformat()
                    current["member_id"] = member_id
                    current["sessions"] = sessions
                    cancelled_now = True
                    return True

                doc = update_document(self.payments, payment_id, cancel, "Payment")
                payment = PaymentRecord(**doc)
                sessions = payment.sessions if payment.sessions is not None else sessions
                member_id = payment.member_id or member_id
                if member_id is None or sessions is None:
                    log_warning("Cancelled payment has no member or session snapshot", properties)
                    return PaymentResult(payment=payment, duplicate=not cancelled_now)

                delta = 0
                grant_key = self._grant_key(doc)
                if sessions > 0 and (grant_key is None or self.ledger.has_entry(member_id, grant_key)):
                    reversal = self.ledger.debit(
                        member_id,
                        sessions,
                        "payment-cancellation",
                        self.reversal_key(payment_id),
                        floor=True
                    )
                    delta = 0 if reversal.duplicate else reversal.delta

                balance = self.ledger.read_balance(member_id)
                log_event("Payment cancelled", {
                    **properties,
                    "member_id": member_id,
                    "sessions_delta": delta,
                    "remaining_sessions": balance.remaining_sessions,
                    "actor_id": actor.id if actor else None
                })
                return PaymentResult(
                    payment=payment,
                    sessions_delta=delta,
                    remaining_sessions=balance.remaining_sessions,
                    total_sessions=balance.total_sessions,
                    duplicate=not cancelled_now
                )
        except Exception as e:
            log_exception(e, {"operation": "cancel_payment", **properties})
            raise
