import json
import sys
from datetime import date
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
from cryptography.fernet import Fernet

sys.path.append(str(Path(__file__).resolve().parents[1]))

import xero_tools
from credentials import Credential, StaticCredentialProvider
from gateway import Gateway, default_registry
from pagination import CursorCodec
from permissions import InMemoryPermissionStore, PermissionEngine
from resource_store import InMemoryResourceStore

USER = "auth0|user-1"
OTHER_USER = "auth0|user-2"
TENANT = "tenant-123"
START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordedSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class UpstreamHTTPError(Exception):
    """Shaped like xero-python's HTTPStatusException: ``.status`` and a JSON ``.body``."""

    def __init__(self, status: int, message: str = "upstream says no"):
        super().__init__(f"({status}) {message}")
        self.status = status
        self.body = json.dumps({"Message": message})


def make_invoice(number: str, *, status: str = "AUTHORISED", total: float = 100.0, amount_due: float = 100.0,
                 contact: str = "Acme Dental", due: date = date(2024, 1, 31), line_items=None):
    return SimpleNamespace(
        invoice_id=f"id-{number}",
        invoice_number=number,
        contact=SimpleNamespace(name=contact, contact_id="c-1", email_address="ap@acme.test"),
        total=total,
        amount_due=amount_due,
        amount_paid=total - amount_due,
        status=status,
        date=date(2024, 1, 1),
        due_date=due,
        line_items=line_items or [],
        payments=[{"amount": 1}],
        to_dict=lambda: {"invoiceID": f"id-{number}", "status": status},
    )


class StubAccountingApi:
    """Records every SDK call; responses come from per-method queues or defaults."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.invoices: List[Any] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self.reports: Dict[str, Any] = {}
        self.contacts: List[Any] = []
        self.accounts: List[Any] = []
        self.bank_transactions: List[Any] = []

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        queue = self.failures.get(name)
        if queue:
            raise queue.pop(0)

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    def get_invoices(self, tenant_id, **kwargs):
        self._record("get_invoices", tenant_id, **kwargs)
        page = kwargs.get("page", 1)
        size = kwargs.get("page_size", 100)
        return SimpleNamespace(invoices=self.invoices[(page - 1) * size: page * size])

    def get_invoice(self, tenant_id, invoice_id):
        self._record("get_invoice", tenant_id, invoice_id)
        return SimpleNamespace(invoices=[i for i in self.invoices if i.invoice_id == invoice_id])

    def update_invoice(self, tenant_id, invoice_id, invoices, idempotency_key=None):
        self._record("update_invoice", tenant_id, invoice_id, invoices, idempotency_key=idempotency_key)
        current = next(i for i in self.invoices if i.invoice_id == invoice_id)
        current.status = invoices.invoices[0].status
        return SimpleNamespace(invoices=[current])

    def create_invoices(self, tenant_id, invoices, idempotency_key=None):
        self._record("create_invoices", tenant_id, invoices, idempotency_key=idempotency_key)
        return SimpleNamespace(invoices=[make_invoice("INV-NEW", status="DRAFT")])

    def create_contacts(self, tenant_id, contacts, idempotency_key=None):
        self._record("create_contacts", tenant_id, contacts, idempotency_key=idempotency_key)
        return SimpleNamespace(contacts=contacts.contacts)

    def create_payment(self, tenant_id, payment, idempotency_key=None):
        self._record("create_payment", tenant_id, payment, idempotency_key=idempotency_key)
        return SimpleNamespace(payments=[SimpleNamespace(payment_id="pay-1")])

    def get_report_profit_and_loss(self, tenant_id, **kwargs):
        self._record("get_report_profit_and_loss", tenant_id, **kwargs)
        return SimpleNamespace(reports=[self.reports["pnl"]])

    def get_report_balance_sheet(self, tenant_id, **kwargs):
        self._record("get_report_balance_sheet", tenant_id, **kwargs)
        return SimpleNamespace(reports=[self.reports["balance_sheet"]])

    def get_contacts(self, tenant_id, **kwargs):
        self._record("get_contacts", tenant_id, **kwargs)
        return SimpleNamespace(contacts=self.contacts[: kwargs.get("page_size", 100)])

    def get_accounts(self, tenant_id, **kwargs):
        self._record("get_accounts", tenant_id, **kwargs)
        return SimpleNamespace(accounts=self.accounts)

    def get_bank_transactions(self, tenant_id, **kwargs):
        self._record("get_bank_transactions", tenant_id, **kwargs)
        return SimpleNamespace(bank_transactions=self.bank_transactions)

    def get_organisations(self, tenant_id):
        self._record("get_organisations", tenant_id)
        return SimpleNamespace(organisations=[SimpleNamespace(name="Smile Dental", base_currency="AUD")])


def cell(value):
    return SimpleNamespace(value=value)


def row(row_type, *values, title=None, rows=None):
    return SimpleNamespace(row_type=row_type, title=title, cells=[cell(v) for v in values], rows=rows or [])


def sample_pnl_report():
    income = [row("Row", f"Sales {i}", f"{i * 10}.00") for i in range(12)]
    return SimpleNamespace(
        report_name="Profit and Loss",
        report_date="31 January 2024",
        report_titles=["Profit and Loss", "Smile Dental", "1 January 2024 to 31 January 2024"],
        updated_date_utc=None,
        rows=[
            row("Header", "", "31 Jan 24"),
            row("Section", title="Income", rows=income + [row("SummaryRow", "Total Income", "660.00")]),
            row("Section", rows=[row("Row", "Net Profit", "420.00")]),
        ],
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordedSleep()


@pytest.fixture
def credentials():
    return StaticCredentialProvider({
        (USER, "xero"): Credential(access_token="xero-token", tenant_id=TENANT),
        (USER, "gmail"): Credential(access_token="gmail-token"),
    })


@pytest.fixture
def resources(clock):
    return InMemoryResourceStore(clock=clock, base_url="https://api.pip.test", schedule_eviction=False)


@pytest.fixture
def cursors(clock):
    return CursorCodec(Fernet.generate_key(), clock=clock)


@pytest.fixture
def permission_store():
    return InMemoryPermissionStore()


@pytest.fixture
def gateway(credentials, resources, cursors, permission_store, clock, sleeper):
    registry = default_registry()
    return Gateway(
        registry=registry,
        permissions=PermissionEngine(permission_store, registry, clock=clock),
        credentials=credentials,
        resources=resources,
        cursors=cursors,
        sleep=sleeper,
    )


@pytest.fixture
def stub_xero(monkeypatch):
    api = StubAccountingApi()
    built = []

    def _build(credential):
        built.append(credential)
        return api

    monkeypatch.setattr(xero_tools, "build_accounting_api", _build)
    api.built = built
    return api
