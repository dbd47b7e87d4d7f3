from azure.cosmos import ContainerProxy
from typing import Callable, Optional
from datetime import datetime
from gymledger.configuration.config import Config
from gymledger.configuration.database import read_document, replace_document
from gymledger.configuration.monitor import log_event, log_exception, log_metric, start_span
from gymledger.models.mod_member import LedgerEntry
from gymledger.schemas.sch_ledger import BalanceSnapshot, LedgerResult
from gymledger.services.svc_errors import InsufficientBalance, NotFound, StaleWrite
from gymledger.validators.val_booking import BookingValidator


class SessionLedger:
    """
    The only writer of member session balances.

    Each member document carries a journal (``ledger_keys``) of every applied
    operation, keyed by the caller's idempotency key. The balance change and
    its journal entry land in a single etag-guarded replace, so an operation
    is either fully applied and recorded, or not applied at all. Replaying a
    key returns the recorded outcome without moving the balance again.
    """

    def __init__(self, members: ContainerProxy, clock: Optional[Callable[[], datetime]] = None):
        self.members = members
        self.clock = clock or BookingValidator._get_current_time

    def _read_member(self, member_id: str) -> dict:
        doc = read_document(self.members, member_id)
        if doc is None:
            raise NotFound("Member", member_id)
        return doc

    def read_balance(self, member_id: str) -> BalanceSnapshot:
        with start_span("read_balance", attributes={"member_id": member_id}):
            doc = self._read_member(member_id)
            return BalanceSnapshot(
                member_id=member_id,
                remaining_sessions=int(doc.get("remaining_sessions") or 0),
                total_sessions=int(doc.get("total_sessions") or 0),
                membership=doc.get("membership"),
                etag=doc.get("_etag")
            )

    def get_entry(self, member_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        journal = self._read_member(member_id).get("ledger_keys") or {}
        if idempotency_key in journal:
            return LedgerEntry(**journal[idempotency_key])
        return None

    def has_entry(self, member_id: str, idempotency_key: str) -> bool:
        return self.get_entry(member_id, idempotency_key) is not None

    def credit(self, member_id: str, amount: int, reason: str, idempotency_key: str,
               lifetime: bool = False) -> LedgerResult:
        """Add sessions. ``lifetime`` grants (approvals, payments) also raise total_sessions."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        return self._apply(member_id, amount, reason, idempotency_key, lifetime=lifetime, floor=False)

    def debit(self, member_id: str, amount: int, reason: str, idempotency_key: str,
              floor: bool = False) -> LedgerResult:
        """
        Remove sessions. Fails with InsufficientBalance rather than going
        negative, unless ``floor`` is set, in which case at most the
        remaining balance is taken.
        """
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        return self._apply(member_id, -amount, reason, idempotency_key, lifetime=False, floor=floor)

    def _apply(self, member_id: str, requested: int, reason: str, key: str,
               lifetime: bool, floor: bool) -> LedgerResult:
        properties = {
            "member_id": member_id,
            "requested": requested,
            "reason": reason,
            "idempotency_key": key
        }
        try:
            with start_span("ledger_apply", attributes=properties):
                for attempt in range(1, Config.LEDGER_MAX_CAS_ATTEMPTS + 1):
                    doc = self._read_member(member_id)
                    journal = doc.get("ledger_keys") or {}

                    if key in journal:
                        entry = LedgerEntry(**journal[key])
                        log_event("Ledger operation already applied", properties)
                        return self._result(member_id, entry, duplicate=True)

                    remaining = int(doc.get("remaining_sessions") or 0)
                    total = int(doc.get("total_sessions") or 0)

                    delta = requested
                    if remaining + requested < 0:
                        if not floor:
                            raise InsufficientBalance(remaining, -requested)
                        delta = -remaining

                    new_remaining = remaining + delta
                    new_total = total + delta if lifetime and delta > 0 else total
                    entry = LedgerEntry(
                        key=key,
                        reason=reason,
                        requested=requested,
                        delta=delta,
                        remaining_sessions=new_remaining,
                        total_sessions=new_total,
                        applied_at=self.clock()
                    )

                    journal[key] = entry.model_dump(mode="json")
                    doc["ledger_keys"] = journal
                    doc["remaining_sessions"] = new_remaining
                    doc["total_sessions"] = new_total

                    try:
                        replace_document(self.members, doc)
                    except StaleWrite:
                        log_event("Ledger write conflict, re-reading", {**properties, "attempt": attempt})
                        continue

                    log_metric("ledger.delta", delta, properties)
                    log_event("Ledger operation applied", {
                        **properties,
                        "delta": delta,
                        "remaining_sessions": new_remaining
                    })
                    return self._result(member_id, entry)

                raise StaleWrite("Member balance", member_id)
        except Exception as e:
            log_exception(e, {"operation": "ledger_apply", **properties})
            raise

    @staticmethod
    def _result(member_id: str, entry: LedgerEntry, duplicate: bool = False) -> LedgerResult:
        return LedgerResult(
            member_id=member_id,
            key=entry.key,
            reason=entry.reason,
            requested=entry.requested,
            delta=entry.delta,
            remaining_sessions=entry.remaining_sessions,
            total_sessions=entry.total_sessions,
            duplicate=duplicate
        )
