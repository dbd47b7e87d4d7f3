from functools import lru_cache
from fastapi import Depends
from gymledger.configuration.database import get_container
from gymledger.services.svc_approval import ApprovalWorkflow
from gymledger.services.svc_booking import BookingService
from gymledger.services.svc_enrollment import EnrollmentTracker
from gymledger.services.svc_ledger import SessionLedger
from gymledger.services.svc_settings import SettingsService
from gymledger.services.svc_sync import WATCHED_TABLES, ConsistencySync

def get_ledger() -> SessionLedger:
    return SessionLedger(get_container("members"))

def get_enrollment_tracker() -> EnrollmentTracker:
    return EnrollmentTracker(get_container("classes"), get_container("bookings"))

def get_settings_service() -> SettingsService:
    return SettingsService(get_container("settings"))

def get_booking_service(
    ledger: SessionLedger = Depends(get_ledger),
    enrollment: EnrollmentTracker = Depends(get_enrollment_tracker),
    settings: SettingsService = Depends(get_settings_service)
) -> BookingService:
    return BookingService(
        get_container("bookings"),
        get_container("classes"),
        ledger,
        enrollment,
        settings
    )

def get_approval_workflow(ledger: SessionLedger = Depends(get_ledger)) -> ApprovalWorkflow:
    return ApprovalWorkflow(
        get_container("membership_requests"),
        get_container("payments"),
        get_container("membership_types"),
        get_container("members"),
        ledger
    )

@lru_cache(maxsize=1)
def get_consistency_sync() -> ConsistencySync:
    """One shared instance so the cache and feed positions survive across requests."""
    return ConsistencySync(
        {table: get_container(table) for table in WATCHED_TABLES},
        get_ledger(),
        get_enrollment_tracker()
    )
