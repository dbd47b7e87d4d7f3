import copy
import itertools
import re
import threading
import pytest
from datetime import datetime, timezone
from azure.core import MatchConditions
from azure.cosmos import exceptions

from gymledger.services.svc_approval import ApprovalWorkflow
from gymledger.services.svc_booking import BookingService
from gymledger.services.svc_enrollment import EnrollmentTracker
from gymledger.services.svc_ledger import SessionLedger
from gymledger.services.svc_settings import SettingsService

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

_COMPARISON = re.compile(r"^c\.(\w+)\s*(<=|>=|<|>|=)\s*(c\.\w+|-?\d+)$")
_EQUALS_PARAM = re.compile(r"^c\.(\w+)\s*=\s*(@\w+)$")
_ARRAY_CONTAINS = re.compile(r"^ARRAY_CONTAINS\((@\w+),\s*c\.(\w+)\)$", re.IGNORECASE)

_OPERATORS = {
    "<": lambda a, b: a < b,
    ">": lambda a, b: a > b,
    "<=": lambda a, b: a <= b,
    ">=": lambda a, b: a >= b,
    "=": lambda a, b: a == b,
}


def _clauses(text: str, keyword: str):
    where = re.split(rf"\b{keyword}\b", text, maxsplit=1, flags=re.IGNORECASE)[1]
    return [part.strip() for part in re.split(r"\bAND\b", where, flags=re.IGNORECASE)]


class FakeContainer:
    """
    In-memory stand-in for a Cosmos ContainerProxy partitioned on /id.

    Supports the calls the services make: etag guarded replaces, patches with
    a filter predicate, and the simple equality / ARRAY_CONTAINS queries.
    """

    _etags = itertools.count(1)

    def __init__(self, name: str):
        self.id = name
        self.items = {}
        self.lock = threading.Lock()

    def _stamp(self, body):
        stored = copy.deepcopy(body)
        stored["_etag"] = f'"{next(self._etags)}"'
        self.items[stored["id"]] = stored
        return copy.deepcopy(stored)

    def seed(self, body):
        with self.lock:
            return self._stamp(body)

    def read_item(self, item, partition_key):
        with self.lock:
            if item not in self.items:
                raise exceptions.CosmosResourceNotFoundError(status_code=404, message="Not found")
            return copy.deepcopy(self.items[item])

    def create_item(self, body):
        with self.lock:
            if body["id"] in self.items:
                raise exceptions.CosmosResourceExistsError(status_code=409, message="Conflict")
            return self._stamp(body)

    def replace_item(self, item, body, etag=None, match_condition=None):
        with self.lock:
            current = self.items.get(item)
            if current is None:
                raise exceptions.CosmosResourceNotFoundError(status_code=404, message="Not found")
            if match_condition == MatchConditions.IfNotModified and current["_etag"] != etag:
                raise exceptions.CosmosAccessConditionFailedError(status_code=412, message="Precondition failed")
            return self._stamp(body)

    def patch_item(self, item, partition_key, patch_operations, filter_predicate=None):
        with self.lock:
            current = self.items.get(item)
            if current is None:
                raise exceptions.CosmosResourceNotFoundError(status_code=404, message="Not found")
            if filter_predicate and not self._matches_predicate(current, filter_predicate):
                raise exceptions.CosmosAccessConditionFailedError(status_code=412, message="Precondition failed")
            updated = copy.deepcopy(current)
            for operation in patch_operations:
                field = operation["path"].lstrip("/")
                if operation["op"] == "incr":
                    updated[field] = updated.get(field, 0) + operation["value"]
                elif operation["op"] in ("set", "replace", "add"):
                    updated[field] = operation["value"]
                else:
                    raise ValueError(f"Unsupported patch op {operation['op']}")
            return self._stamp(updated)

    def query_items(self, query, parameters=None, enable_cross_partition_query=False):
        values = {p["name"]: p["value"] for p in parameters or []}
        tests = []
        for clause in _clauses(query, "WHERE"):
            match = _EQUALS_PARAM.match(clause)
            if match:
                field, param = match.groups()
                tests.append(lambda doc, f=field, v=values[param]: doc.get(f) == v)
                continue
            match = _ARRAY_CONTAINS.match(clause)
            if match:
                param, field = match.groups()
                tests.append(lambda doc, f=field, v=values[param]: doc.get(f) in v)
                continue
            raise ValueError(f"Unsupported query clause {clause}")
        with self.lock:
            return [copy.deepcopy(doc) for doc in self.items.values() if all(t(doc) for t in tests)]

    def delete_item(self, item, partition_key):
        with self.lock:
            if item not in self.items:
                raise exceptions.CosmosResourceNotFoundError(status_code=404, message="Not found")
            del self.items[item]

    @staticmethod
    def _matches_predicate(doc, predicate):
        for clause in _clauses(predicate, "where"):
            field, operator, operand = _COMPARISON.match(clause).groups()
            if operand.startswith("c."):
                right = doc.get(operand[2:])
            else:
                right = int(operand)
            if not _OPERATORS[operator](doc.get(field), right):
                return False
        return True


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def containers():
    return {
        name: FakeContainer(name)
        for name in (
            "members",
            "classes",
            "bookings",
            "membership_requests",
            "membership_types",
            "payments",
            "settings"
        )
    }


@pytest.fixture
def ledger(containers, clock):
    return SessionLedger(containers["members"], clock=clock)


@pytest.fixture
def enrollment(containers):
    return EnrollmentTracker(containers["classes"], containers["bookings"])


@pytest.fixture
def booking_service(containers, ledger, enrollment, clock):
    return BookingService(
        containers["bookings"],
        containers["classes"],
        ledger,
        enrollment,
        SettingsService(containers["settings"]),
        clock=clock
    )


@pytest.fixture
def workflow(containers, ledger, clock):
    return ApprovalWorkflow(
        containers["membership_requests"],
        containers["payments"],
        containers["membership_types"],
        containers["members"],
        ledger,
        clock=clock
    )


@pytest.fixture
def add_member(containers):
    def add(member_id="member1", remaining=3, total=10, name="Ana Garcia"):
        return containers["members"].seed({
            "id": member_id,
            "email": f"{member_id}@example.com",
            "name": name,
            "remaining_sessions": remaining,
            "total_sessions": total,
            "membership": "Basic",
            "ledger_keys": {}
        })
    return add


@pytest.fixture
def add_class(containers):
    # Default class starts the next day at 18:00 UTC, inside every booking window
    def add(class_id="class1", capacity=10, enrolled=0, date="2025-03-11", start="18:00",
            end="19:00", status="Active"):
        return containers["classes"].seed({
            "id": class_id,
            "name": "Spinning",
            "schedule": f"{date}T00:00:00",
            "start_time": start,
            "end_time": end,
            "capacity": capacity,
            "enrolled": enrolled,
            "trainer": "trainer1",
            "status": status
        })
    return add


@pytest.fixture
def add_plan(containers):
    def add(name="10 Sessions", sessions=10, price=50.0, plan_id=None):
        return containers["membership_types"].seed({
            "id": plan_id or name.lower().replace(" ", "-"),
            "name": name,
            "sessions": sessions,
            "price": price,
            "active": True
        })
    return add
