from azure.cosmos import ContainerProxy
from typing import List
from gymledger.configuration.database import (
    patch_document,
    query_documents,
    read_document,
    replace_document
)
from gymledger.configuration.monitor import log_event, log_exception, log_metric, log_warning, start_span
from gymledger.models.mod_booking import ACTIVE_STATUSES
from gymledger.schemas.sch_ledger import EnrollmentSnapshot
from gymledger.services.svc_errors import ClassFull, NotFound, StaleWrite

ACTIVE_BOOKINGS_QUERY = (
    "SELECT * FROM c WHERE c.class_id = @class_id "
    "AND ARRAY_CONTAINS(@statuses, c.status)"
)


class EnrollmentTracker:
    """Keeps a class's ``enrolled`` counter in step with its active bookings."""

    def __init__(self, classes: ContainerProxy, bookings: ContainerProxy):
        self.classes = classes
        self.bookings = bookings

    @staticmethod
    def _snapshot(doc: dict) -> EnrollmentSnapshot:
        return EnrollmentSnapshot(
            class_id=doc["id"],
            enrolled=int(doc.get("enrolled") or 0),
            capacity=int(doc["capacity"]),
            etag=doc.get("_etag")
        )

    def _read_class(self, class_id: str) -> dict:
        doc = read_document(self.classes, class_id)
        if doc is None:
            raise NotFound("Class", class_id)
        return doc

    def read_enrollment(self, class_id: str) -> EnrollmentSnapshot:
        with start_span("read_enrollment", attributes={"class_id": class_id}):
            return self._snapshot(self._read_class(class_id))

    def increment(self, class_id: str) -> EnrollmentSnapshot:
        """Take one seat: enrolled = enrolled + 1 where enrolled < capacity, applied by the store."""
        try:
            with start_span("enrollment_increment", attributes={"class_id": class_id}):
                try:
                    doc = patch_document(
                        self.classes,
                        class_id,
                        [{"op": "incr", "path": "/enrolled", "value": 1}],
                        condition="from c where c.enrolled < c.capacity"
                    )
                except StaleWrite:
                    current = self._snapshot(self._read_class(class_id))
                    if current.enrolled >= current.capacity:
                        raise ClassFull(class_id, current.capacity, current.enrolled)
                    raise

                snapshot = self._snapshot(doc)
                log_metric("enrollment.enrolled", snapshot.enrolled, {"class_id": class_id})
                return snapshot
        except Exception as e:
            log_exception(e, {"operation": "enrollment_increment", "class_id": class_id})
            raise

    def decrement(self, class_id: str) -> EnrollmentSnapshot:
        """Release one seat; the counter never goes below zero."""
        try:
            with start_span("enrollment_decrement", attributes={"class_id": class_id}):
                try:
                    doc = patch_document(
                        self.classes,
                        class_id,
                        [{"op": "incr", "path": "/enrolled", "value": -1}],
                        condition="from c where c.enrolled > 0"
                    )
                except StaleWrite:
                    snapshot = self._snapshot(self._read_class(class_id))
                    log_warning("Enrollment already at zero", {"class_id": class_id})
                    return snapshot

                snapshot = self._snapshot(doc)
                log_metric("enrollment.enrolled", snapshot.enrolled, {"class_id": class_id})
                return snapshot
        except Exception as e:
            log_exception(e, {"operation": "enrollment_decrement", "class_id": class_id})
            raise

    def active_bookings(self, class_id: str) -> List[dict]:
        return query_documents(
            self.bookings,
            ACTIVE_BOOKINGS_QUERY,
            [
                {"name": "@class_id", "value": class_id},
                {"name": "@statuses", "value": [status.value for status in ACTIVE_STATUSES]}
            ]
        )

    def reconcile(self, class_id: str, attempts: int = 3) -> EnrollmentSnapshot:
        """Set the counter to the number of Pending/Confirmed bookings for the class."""
        try:
            with start_span("enrollment_reconcile", attributes={"class_id": class_id}):
                for _ in range(attempts):
                    doc = self._read_class(class_id)
                    count = len(self.active_bookings(class_id))
                    current = int(doc.get("enrolled") or 0)

                    if count > int(doc["capacity"]):
                        log_warning("Class overbooked", {
                            "class_id": class_id,
                            "capacity": doc["capacity"],
                            "active_bookings": count
                        })
                    if count == current:
                        return self._snapshot(doc)

                    doc["enrolled"] = count
                    try:
                        doc = replace_document(self.classes, doc)
                    except StaleWrite:
                        continue

                    log_event("Enrollment reconciled", {
                        "class_id": class_id,
                        "previous": current,
                        "enrolled": count
                    })
                    return self._snapshot(doc)

                raise StaleWrite("Class enrollment", class_id)
        except Exception as e:
            log_exception(e, {"operation": "enrollment_reconcile", "class_id": class_id})
            raise
