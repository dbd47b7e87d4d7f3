import threading
from azure.cosmos import ContainerProxy
from typing import Any, Callable, Dict, List, Optional, Tuple
from gymledger.configuration.config import Config
from gymledger.configuration.database import store_operation
from gymledger.configuration.monitor import log_event, log_exception, log_warning, start_span
from gymledger.schemas.sch_ledger import BalanceSnapshot, DriftResponse, EnrollmentSnapshot
from gymledger.services.svc_enrollment import EnrollmentTracker
from gymledger.services.svc_errors import NotFound, StaleWrite, StoreUnavailable
from gymledger.services.svc_ledger import SessionLedger

WATCHED_TABLES = ("members", "classes", "bookings")

Subscriber = Tuple[str, Callable[[Dict[str, Any]], None], Dict[str, Any]]


class ConsistencySync:
    """
    Keeps locally cached balances and enrollment counters honest.

    Callers record what they last saw (with its etag); change-feed polling
    and periodic re-reads replace those entries with authoritative values and
    report any drift that was corrected.
    """

    def __init__(
        self,
        containers: Dict[str, ContainerProxy],
        ledger: SessionLedger,
        enrollment: EnrollmentTracker
    ):
        self.containers = containers
        self.ledger = ledger
        self.enrollment = enrollment
        self.balances: Dict[str, BalanceSnapshot] = {}
        self.enrollments: Dict[str, EnrollmentSnapshot] = {}
        self._continuations: Dict[str, Optional[str]] = {}
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def remember_balance(self, snapshot: BalanceSnapshot):
        with self._lock:
            self.balances[snapshot.member_id] = snapshot

    def remember_enrollment(self, snapshot: EnrollmentSnapshot):
        with self._lock:
            self.enrollments[snapshot.class_id] = snapshot

    def is_stale(self, kind: str, item_id: str, etag: Optional[str]) -> bool:
        """True when the cache holds a different version than ``etag`` (or nothing at all)."""
        cache = self.balances if kind == "member" else self.enrollments
        cached = cache.get(item_id)
        return cached is None or etag is None or cached.etag != etag

    def subscribe(
        self,
        table: str,
        callback: Callable[[Dict[str, Any]], None],
        match: Optional[Dict[str, Any]] = None
    ) -> Callable[[], None]:
        """
        Register for changes to ``table``, optionally only documents whose
        fields equal ``match`` (e.g. ``{"id": member_id}``). Returns an
        unsubscribe function.
        """
        if table not in WATCHED_TABLES:
            raise ValueError(f"Table {table} is not watched")
        subscriber = (table, callback, dict(match or {}))
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe():
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def _apply_change(self, table: str, doc: Dict[str, Any]):
        if table == "members":
            self.remember_balance(BalanceSnapshot(
                member_id=doc["id"],
                remaining_sessions=int(doc.get("remaining_sessions") or 0),
                total_sessions=int(doc.get("total_sessions") or 0),
                membership=doc.get("membership"),
                etag=doc.get("_etag")
            ))
        elif table == "classes":
            self.remember_enrollment(EnrollmentSnapshot(
                class_id=doc["id"],
                enrolled=int(doc.get("enrolled") or 0),
                capacity=int(doc.get("capacity") or 0),
                etag=doc.get("_etag")
            ))

        with self._lock:
            subscribers = [s for s in self._subscribers if s[0] == table]
        for _, callback, match in subscribers:
            if all(doc.get(field) == value for field, value in match.items()):
                callback(doc)

    def _read_feed(self, table: str, container: ContainerProxy) -> List[Dict[str, Any]]:
        token = self._continuations.get(table)
        # Headers of this feed's own pages; the client's last_response_headers
        # are shared with every other request on the connection.
        tokens: List[str] = []

        def capture(response_headers, _result):
            etag = (response_headers or {}).get("etag")
            if etag:
                tokens.append(etag)

        with store_operation(f"change feed {table}"):
            if token:
                changes = list(container.query_items_change_feed(continuation=token, response_hook=capture))
            else:
                changes = list(container.query_items_change_feed(
                    is_start_from_beginning=False,
                    response_hook=capture
                ))
        if tokens:
            self._continuations[table] = tokens[-1]
        return changes

    def poll_changes(self) -> int:
        """Read each watched table's change feed since the last poll and dispatch the changes."""
        count = 0
        with start_span("sync_poll_changes"):
            for table in WATCHED_TABLES:
                container = self.containers.get(table)
                if container is None:
                    continue
                for doc in self._read_feed(table, container):
                    self._apply_change(table, doc)
                    count += 1
        if count:
            log_event("Change feed processed", {"changes": count})
        return count

    def reconcile_member(self, member_id: str) -> DriftResponse:
        cached = self.balances.get(member_id)
        snapshot = self.ledger.read_balance(member_id)
        self.remember_balance(snapshot)
        drift = DriftResponse(
            kind="member",
            id=member_id,
            field="remaining_sessions",
            cached=cached.remaining_sessions if cached else None,
            authoritative=snapshot.remaining_sessions
        )
        if drift.corrected:
            log_warning("Balance drift corrected", drift.model_dump())
        return drift

    def reconcile_class(self, class_id: str) -> DriftResponse:
        cached = self.enrollments.get(class_id)
        snapshot = self.enrollment.reconcile(class_id)
        self.remember_enrollment(snapshot)
        drift = DriftResponse(
            kind="class",
            id=class_id,
            field="enrolled",
            cached=cached.enrolled if cached else None,
            authoritative=snapshot.enrolled
        )
        if drift.corrected:
            log_warning("Enrollment drift corrected", drift.model_dump())
        return drift

    def reconcile_all(self) -> List[DriftResponse]:
        drifts = []
        for kind, cache, reconcile in (
            ("member", self.balances, self.reconcile_member),
            ("class", self.enrollments, self.reconcile_class)
        ):
            for item_id in list(cache):
                try:
                    drifts.append(reconcile(item_id))
                except NotFound:
                    with self._lock:
                        cache.pop(item_id, None)
                    log_warning("Cached record no longer exists", {"kind": kind, "id": item_id})
                except StaleWrite:
                    log_warning("Cached record still changing, retrying next cycle", {"kind": kind, "id": item_id})
        return drifts

    def run(self, stop_event: threading.Event, interval: Optional[float] = None):
        """Background loop: poll the change feed and re-read every cached entry each cycle."""
        interval = interval if interval is not None else Config.SYNC_INTERVAL_SECONDS
        log_event("Consistency sync started", {"interval": interval})
        while not stop_event.is_set():
            try:
                self.poll_changes()
                self.reconcile_all()
            except (StoreUnavailable, StaleWrite) as e:
                # the next cycle re-reads everything anyway
                log_warning("Consistency sync cycle skipped", {"reason": e.message})
            except Exception as e:
                log_exception(e, {"operation": "consistency_sync"})
                raise
            stop_event.wait(interval)
        log_event("Consistency sync stopped")
