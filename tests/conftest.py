"""
In-memory stand-ins for the database repositories and the Square API.
"""

import itertools
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from invoice_gateway.accounts import RoleAlreadyGranted
from invoice_gateway.errors import DuplicateOrderError, SquareAPIError
from invoice_gateway.invoicing import InvoiceRequestHandler
from invoice_gateway.ledger import COMPLETED, PROCESSING, OrderRecord, idempotency_key_for
from invoice_gateway.security import IdentityProvider, create_access_token, hash_password
from invoice_gateway.square import CreatedInvoice, idempotency_key
from invoice_gateway.utils.audit import COUNTED_RESULTS

NOW = datetime(2026, 10, 19, 15, 0, 0, tzinfo=timezone.utc)


# ---------------- accounts ----------------
class FakeAccounts:
    def __init__(self):
        self.users = {}
        self.roles = {}  # user_id -> set(role)

    def add_user(self, user_id, email, password=None, roles=()):
        # bcrypt is slow; only hash when a test logs in
        password_hash = hash_password(password) if password else "!"
        self.users[user_id] = {"id": user_id, "email": email, "password_hash": password_hash}
        self.roles[user_id] = set(roles)

    def get_user(self, user_id):
        u = self.users.get(user_id)
        return {"id": u["id"], "email": u["email"]} if u else None

    def get_user_by_email(self, email):
        return next((u for u in self.users.values() if u["email"] == email), None)

    def active_roles(self, user_id):
        return sorted(self.roles.get(user_id, ()))

    def is_authorized_invoicer(self, user_id):
        return "invoicer" in self.roles.get(user_id, ())

    def grant_role(self, user_id, role, granted_by):
        if role in self.roles.setdefault(user_id, set()):
            raise RoleAlreadyGranted(role)
        self.roles[user_id].add(role)

    def revoke_roles(self, user_id):
        n = len(self.roles.get(user_id, ()))
        self.roles[user_id] = set()
        return n


# ---------------- ledger ----------------
class FakeLedger:
    def __init__(self):
        self.records = {}
        self.history = []  # (order_number, steps snapshot) per write
        self._lock = threading.Lock()

    def get(self, order_number):
        r = self.records.get(order_number)
        return replace(r, steps_completed=list(r.steps_completed)) if r else None

    def create(self, order_number, user_id, amount_cents, customer_name, customer_email):
        with self._lock:
            if order_number in self.records:
                raise DuplicateOrderError(order_number)
            record = OrderRecord(
                order_number=order_number,
                user_id=user_id,
                status=PROCESSING,
                amount_cents=amount_cents,
                customer_name=customer_name,
                customer_email=customer_email,
                idempotency_key=idempotency_key_for(order_number),
                created_at=NOW,
            )
            self.records[order_number] = record
            return record

    def reopen(self, order_number):
        with self._lock:
            r = self.records[order_number]
            if r.status == COMPLETED:
                return False
            r.status = PROCESSING
            return True

    def record_progress(self, order_number, steps, **ids):
        self._update(order_number, steps, ids)

    def mark_completed(self, order_number, steps, **ids):
        self._update(order_number, steps, ids, status=COMPLETED)
        self.records[order_number].completed_at = NOW

    def mark_failed(self, order_number, steps, error_message, **ids):
        self._update(order_number, steps, ids, status="failed")
        self.records[order_number].error_message = error_message

    def _update(self, order_number, steps, ids, status=None):
        r = self.records[order_number]
        resolution = {"customer_found", "customer_created"}
        for s in steps:
            if s in r.steps_completed:
                continue
            if s in resolution and resolution & set(r.steps_completed):
                continue
            r.steps_completed.append(s)
        for k, v in ids.items():
            if v is not None:
                setattr(r, k, v)
        if status:
            r.status = status
        self.history.append((order_number, list(r.steps_completed)))

    def count_by_status(self):
        counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for r in self.records.values():
            counts[r.status] += 1
        return counts


# ---------------- audit ----------------
class FakeAudit:
    def __init__(self, clock=lambda: NOW):
        self.entries = []
        self.clock = clock
        self.fail = False

    def insert(self, entry):
        if self.fail:
            raise RuntimeError("audit table unavailable")
        entry.timestamp = entry.timestamp or self.clock()
        self.entries.append(entry)

    def count_since(self, since, user_id=None):
        return sum(
            1 for e in self.entries
            if e.timestamp > since
            and e.result in COUNTED_RESULTS
            and (user_id is None or e.user_id == user_id)
        )

    def search(self, correlation_id=None, order_number=None, result=None, limit=50):
        rows = [
            e for e in reversed(self.entries)
            if (not correlation_id or e.correlation_id == correlation_id)
            and (not order_number or e.order_number == order_number)
            and (not result or e.result == result)
        ]
        return [{"correlation_id": e.correlation_id, "result": e.result, "error_code": e.error_code} for e in rows[:limit]]

    def results(self):
        return [e.result for e in self.entries]


# ---------------- Square ----------------
class FakeSquare:
    """
    Mimics Square's idempotency: a repeated key returns the original object.
    Set `fail_on` to a method name to make that call raise.
    """

    def __init__(self):
        self.customers = {}  # email -> customer
        self.by_key = {}
        self.invoices = {}
        self.published = set()
        self.calls = []
        self.fail_on = None
        self._ids = itertools.count(1)

    def _maybe_fail(self, name):
        self.calls.append(name)
        if self.fail_on == name:
            raise SquareAPIError(f"{name} failed: simulated outage", status_code=500)

    def search_customer_by_email(self, email):
        self._maybe_fail("search_customer_by_email")
        return self.customers.get(email)

    def create_customer(self, name, email, order_number):
        self._maybe_fail("create_customer")
        key = idempotency_key("cust", order_number)
        if key not in self.by_key:
            customer = {"id": f"CUST{next(self._ids)}", "email_address": email}
            self.by_key[key] = customer
            self.customers[email] = customer
        return self.by_key[key]

    def create_order(self, customer_id, amount_cents, order_number):
        self._maybe_fail("create_order")
        key = idempotency_key("ord", order_number)
        self.by_key.setdefault(key, f"ORD{next(self._ids)}")
        return self.by_key[key]

    def create_invoice(self, order_id, customer_id, order_number, today):
        self._maybe_fail("create_invoice")
        key = idempotency_key("inv", order_number)
        if key not in self.by_key:
            n = next(self._ids)
            invoice = CreatedInvoice(id=f"INV{n}", invoice_number=f"{n:06d}", version=0)
            self.by_key[key] = invoice
            self.invoices[invoice.id] = invoice
        return self.by_key[key]

    def publish_invoice(self, invoice_id, order_number):
        self._maybe_fail("publish_invoice")
        self.published.add(invoice_id)
        return {"id": invoice_id, "status": "UNPAID"}


# ---------------- fixtures ----------------
@pytest.fixture
def accounts():
    a = FakeAccounts()
    a.add_user("user-1", "rep@example.com", roles=("invoicer",))
    a.add_user("user-2", "viewer@example.com")
    a.add_user("auditor-1", "audit@example.com", roles=("auditor",))
    return a


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def square():
    return FakeSquare()


@pytest.fixture
def handler(accounts, ledger, audit, square):
    return InvoiceRequestHandler(
        identity=IdentityProvider(accounts),
        accounts=accounts,
        ledger=ledger,
        audit=audit,
        square=square,
        max_amount_cents=5_000_000,
        user_rate_limit=10,
        global_rate_limit=50,
        now=lambda: NOW,
    )


def bearer(user_id="user-1", email="rep@example.com", **kw):
    return f"Bearer {create_access_token(subject=user_id, email=email, **kw)}"


def order_payload(**overrides):
    payload = {
        "order_number": "7600",
        "customer_name": "Jane Doe",
        "customer_email": "jane@example.org",
        "amount_cents": 3250,
        "request_timestamp": NOW.isoformat(),
    }
    payload.update(overrides)
    return payload


def ts(seconds_ago: float) -> str:
    return (NOW - timedelta(seconds=seconds_ago)).isoformat()
