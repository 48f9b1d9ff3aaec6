"""Xero tool executors.

Each executor obtains the caller's Xero credential, talks to the accounting
API through ``ToolContext.call_upstream`` (retry, timeout, error
classification) and returns a filtered payload. The SDK is synchronous; the
retry loop runs it in the default executor.
"""
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from xero_python.accounting import (
    Account,
    AccountingApi,
    Contact,
    Contacts,
    Invoice,
    Invoices,
    LineItem,
    Payment,
)
from xero_python.api_client import ApiClient
from xero_python.api_client.configuration import Configuration
from xero_python.api_client.oauth2 import OAuth2Token

from credentials import XERO_CLIENT_ID, XERO_CLIENT_SECRET, Credential
from errors import InvalidState, NotConnected, SchemaViolation, UpstreamPermanent
from permissions import PermissionLevel
from registry import ToolContext, ToolDefinition
from resource_store import resource_uri
from response_filters import (
    filter_account,
    filter_bank_account,
    filter_bank_transaction_summary,
    filter_contact_summary,
    filter_expense_summary,
    filter_invoice_detail,
    filter_invoice_summary,
    filter_organisation,
    filter_report_summary,
    flatten_report_rows,
    report_columns,
)
from schema import (
    CURSOR_PROPERTY,
    ArraySchema,
    BooleanSchema,
    IntegerSchema,
    NumberSchema,
    StringSchema,
    date_string,
    object_schema,
)
from utils import _as_float, logger

XERO_PAGE_SIZE = 100
CONTACTS_PAGE_SIZE = 100
REPORT_PREVIEW_ROWS = 10
AGED_MAX_PAGES = 10
AGED_BUCKETS = ("current", "1-30", "31-60", "61-90", "90+")
INVOICE_STATUSES = ("DRAFT", "SUBMITTED", "AUTHORISED", "PAID", "VOIDED")
ACCOUNT_TYPES = (
    "BANK", "CURRENT", "CURRLIAB", "DEPRECIATN", "DIRECTCOSTS", "EQUITY", "EXPENSE", "FIXED",
    "INVENTORY", "LIABILITY", "NONCURRENT", "OTHERINCOME", "OVERHEADS", "PREPAYMENT", "REVENUE",
    "SALES", "TERMLIAB",
)


def build_accounting_api(credential: Credential) -> AccountingApi:
    cfg = Configuration(
        oauth2_token=OAuth2Token(client_id=XERO_CLIENT_ID, client_secret=XERO_CLIENT_SECRET),
        debug=False,
    )
    client = ApiClient(configuration=cfg)
    token = {
        "access_token": credential.access_token,
        "refresh_token": credential.refresh_token,
        "token_type": "Bearer",
        "expires_at": credential.expires_at,
        "scope": list(credential.scopes),
    }

    @client.oauth2_token_getter
    def _getter():
        return token

    # Refreshed tokens are persisted by the credential provider, not here
    @client.oauth2_token_saver
    def _saver(new_token):
        token.update(new_token or {})

    client.set_oauth2_token(token)
    return AccountingApi(client)


async def _xero(ctx: ToolContext) -> Tuple[AccountingApi, str]:
    credential = await ctx.credential("xero")
    if not credential.tenant_id:
        raise NotConnected("xero")
    return build_accounting_api(credential), credential.tenant_id


# ---- where-clause helpers ----

def _parse_iso_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def _where_date_field(field: str, date_from: Any = None, date_to: Any = None) -> str:
    parts = []
    start = _parse_iso_date(date_from)
    end = _parse_iso_date(date_to)
    if start:
        parts.append(f"{field} >= DateTime({start.year},{start.month},{start.day})")
    if end:
        parts.append(f"{field} <= DateTime({end.year},{end.month},{end.day})")
    return " && ".join(parts)


def _join_where(*clauses: str) -> Optional[str]:
    parts = [c for c in clauses if c]
    return " && ".join(parts) if parts else None


def _quoted(value: str) -> str:
    return value.replace('"', "").replace("\\", "")


def _page_kwargs(offset: int, page_size: int) -> Dict[str, int]:
    # Xero pages are 1-indexed
    return {"page": offset // page_size + 1, "page_size": page_size}


def _first_report(response):
    reports = getattr(response, "reports", None) or []
    if not reports:
        raise UpstreamPermanent("Xero returned no report for this request.")
    return reports[0]


async def _fetch_invoice(ctx: ToolContext, api: AccountingApi, tenant_id: str, invoice_id: str):
    response = await ctx.call_upstream(lambda: api.get_invoice(tenant_id, invoice_id), "Xero get_invoice")
    invoices = getattr(response, "invoices", None) or []
    if not invoices:
        raise UpstreamPermanent(f"Invoice {invoice_id} was not found in Xero.", 404)
    return invoices[0]


def _status(entity) -> Optional[str]:
    status = getattr(entity, "status", None)
    return getattr(status, "value", status)


async def _snapshot(ctx: ToolContext, tenant_id: str, entity) -> str:
    to_dict = getattr(entity, "to_dict", None)
    data = to_dict() if callable(to_dict) else entity
    meta = await ctx.resources.store([data], "export", ctx.user_id, tenant_id)
    return resource_uri(meta.resource_id, ctx.resources.base_url)


# ---- Invoices ----

async def get_invoices(ctx: ToolContext, args: Dict[str, Any]):
    params = ctx.cursors.parse_params(args, XERO_PAGE_SIZE)
    api, tenant_id = await _xero(ctx)
    kwargs: Dict[str, Any] = _page_kwargs(params.offset, params.page_size)
    where = _join_where(
        f'Status=="{args["status"]}"' if args.get("status") else "",
        f'Contact.Name.Contains("{_quoted(args["contactName"])}")' if args.get("contactName") else "",
        _where_date_field("Date", args.get("fromDate"), args.get("toDate")),
    )
    if where:
        kwargs["where"] = where
    response = await ctx.call_upstream(lambda: api.get_invoices(tenant_id, **kwargs), "Xero get_invoices")
    invoices = getattr(response, "invoices", None) or []
    project = filter_invoice_detail if args.get("detail") else filter_invoice_summary
    return ctx.cursors.paginate([project(inv) for inv in invoices], len(invoices), params).to_dict()


async def _open_invoices(ctx: ToolContext, api: AccountingApi, tenant_id: str, invoice_type: str) -> List[Any]:
    collected: List[Any] = []
    for page in range(1, AGED_MAX_PAGES + 1):
        kwargs = {"where": f'Type=="{invoice_type}"', "statuses": ["AUTHORISED"], "page": page,
                  "page_size": XERO_PAGE_SIZE}
        response = await ctx.call_upstream(lambda: api.get_invoices(tenant_id, **kwargs), "Xero get_invoices")
        batch = getattr(response, "invoices", None) or []
        collected.extend(batch)
        if len(batch) < XERO_PAGE_SIZE:
            break
    else:
        logger.warning("Aged %s truncated after %s pages", invoice_type, AGED_MAX_PAGES)
    return collected


def _bucket_for(days_overdue: int) -> str:
    if days_overdue <= 0:
        return "current"
    if days_overdue <= 30:
        return "1-30"
    if days_overdue <= 60:
        return "31-60"
    if days_overdue <= 90:
        return "61-90"
    return "90+"


def age_invoices(invoices: List[Any], as_of: date) -> Dict[str, Any]:
    """Outstanding amounts per contact, bucketed by days past due."""
    totals = {bucket: 0.0 for bucket in AGED_BUCKETS}
    by_contact: Dict[str, Dict[str, Any]] = {}
    for inv in invoices:
        amount_due = _as_float(getattr(inv, "amount_due", None)) or 0.0
        if amount_due <= 0:
            continue
        due = _parse_iso_date(getattr(inv, "due_date", None)) or _parse_iso_date(getattr(inv, "date", None)) or as_of
        bucket = _bucket_for((as_of - due).days)
        name = getattr(getattr(inv, "contact", None), "name", None) or "Unknown contact"
        entry = by_contact.setdefault(name, {
            "contact": name,
            "total": 0.0,
            "invoiceCount": 0,
            "oldestDueDate": due.isoformat(),
            **{bucket_name: 0.0 for bucket_name in AGED_BUCKETS},
        })
        entry[bucket] = round(entry[bucket] + amount_due, 2)
        entry["total"] = round(entry["total"] + amount_due, 2)
        entry["invoiceCount"] += 1
        entry["oldestDueDate"] = min(entry["oldestDueDate"], due.isoformat())
        totals[bucket] = round(totals[bucket] + amount_due, 2)
    contacts = sorted(by_contact.values(), key=lambda e: (-e["total"], e["contact"]))
    return {
        "asOf": as_of.isoformat(),
        "totalOutstanding": round(sum(totals.values()), 2),
        "totals": totals,
        "contactCount": len(contacts),
        "contacts": contacts,
    }


async def _aged(ctx: ToolContext, args: Dict[str, Any], invoice_type: str):
    as_of = _parse_iso_date(args.get("date")) or date.today()
    api, tenant_id = await _xero(ctx)
    invoices = await _open_invoices(ctx, api, tenant_id, invoice_type)
    return age_invoices(invoices, as_of)


async def get_aged_receivables(ctx, args):
    return await _aged(ctx, args, "ACCREC")


async def get_aged_payables(ctx, args):
    return await _aged(ctx, args, "ACCPAY")


# ---- Reports ----

async def _report_response(ctx: ToolContext, tenant_id: str, report, full_report: bool):
    if not full_report:
        return filter_report_summary(report)
    rows = flatten_report_rows(report)
    dual = await ctx.resources.create_dual_response(
        rows, REPORT_PREVIEW_ROWS, "report", ctx.user_id, tenant_id,
        {"totalRows": len(rows), "columns": report_columns(report)},
    )
    payload = {
        "reportName": getattr(report, "report_name", None),
        "reportDate": getattr(report, "report_date", None),
    }
    payload.update(dual.to_dict())
    payload["note"] = "This is a preview. Use the resource URI to retrieve the complete report."
    return payload


async def get_profit_and_loss(ctx, args):
    api, tenant_id = await _xero(ctx)
    kwargs = {}
    if args.get("fromDate"):
        kwargs["from_date"] = _parse_iso_date(args["fromDate"])
    if args.get("toDate"):
        kwargs["to_date"] = _parse_iso_date(args["toDate"])
    if args.get("periods"):
        kwargs["periods"] = args["periods"]
    if args.get("timeframe"):
        kwargs["timeframe"] = args["timeframe"]
    response = await ctx.call_upstream(
        lambda: api.get_report_profit_and_loss(tenant_id, **kwargs), "Xero get_report_profit_and_loss")
    return await _report_response(ctx, tenant_id, _first_report(response), args.get("fullReport", False))


async def get_balance_sheet(ctx, args):
    api, tenant_id = await _xero(ctx)
    kwargs = {}
    if args.get("date"):
        kwargs["date"] = _parse_iso_date(args["date"])
    if args.get("periods"):
        kwargs["periods"] = args["periods"]
    response = await ctx.call_upstream(
        lambda: api.get_report_balance_sheet(tenant_id, **kwargs), "Xero get_report_balance_sheet")
    return await _report_response(ctx, tenant_id, _first_report(response), args.get("fullReport", False))


# ---- Banking / expenses ----

async def get_bank_accounts(ctx, args):
    api, tenant_id = await _xero(ctx)
    response = await ctx.call_upstream(
        lambda: api.get_accounts(tenant_id, where='Type=="BANK"'), "Xero get_accounts")
    accounts = [filter_bank_account(a) for a in getattr(response, "accounts", None) or []]
    return {"accounts": accounts, "count": len(accounts)}


async def get_bank_transactions(ctx, args):
    params = ctx.cursors.parse_params(args, XERO_PAGE_SIZE)
    api, tenant_id = await _xero(ctx)
    kwargs: Dict[str, Any] = _page_kwargs(params.offset, params.page_size)
    where = _join_where(
        _where_date_field("Date", args.get("fromDate"), args.get("toDate")),
        f'BankAccount.AccountID==Guid("{_quoted(args["bankAccountId"])}")' if args.get("bankAccountId") else "",
    )
    if where:
        kwargs["where"] = where
    response = await ctx.call_upstream(
        lambda: api.get_bank_transactions(tenant_id, **kwargs), "Xero get_bank_transactions")
    transactions = getattr(response, "bank_transactions", None) or []
    items = [filter_bank_transaction_summary(t) for t in transactions]
    return ctx.cursors.paginate(items, len(transactions), params).to_dict()


async def get_expenses(ctx, args):
    params = ctx.cursors.parse_params(args, XERO_PAGE_SIZE)
    api, tenant_id = await _xero(ctx)
    kwargs: Dict[str, Any] = _page_kwargs(params.offset, params.page_size)
    kwargs["where"] = _join_where(
        'Type=="SPEND"',
        _where_date_field("Date", args.get("fromDate"), args.get("toDate")),
    )
    response = await ctx.call_upstream(
        lambda: api.get_bank_transactions(tenant_id, **kwargs), "Xero get_bank_transactions")
    transactions = getattr(response, "bank_transactions", None) or []
    items = [filter_expense_summary(t) for t in transactions]
    if args.get("category"):
        items = [item for item in items if item["category"] == args["category"]]
    # The cursor advances over the unfiltered upstream page
    return ctx.cursors.paginate(items, len(transactions), params).to_dict()


# ---- Contacts / organisation / accounts ----

async def get_contacts(ctx, args):
    params = ctx.cursors.parse_params(args, CONTACTS_PAGE_SIZE)
    api, tenant_id = await _xero(ctx)
    kwargs: Dict[str, Any] = _page_kwargs(params.offset, params.page_size)
    where = _join_where(
        "IsCustomer==true" if args.get("isCustomer") else "",
        "IsSupplier==true" if args.get("isSupplier") else "",
    )
    if where:
        kwargs["where"] = where
    response = await ctx.call_upstream(lambda: api.get_contacts(tenant_id, **kwargs), "Xero get_contacts")
    contacts = getattr(response, "contacts", None) or []
    return ctx.cursors.paginate([filter_contact_summary(c) for c in contacts], len(contacts), params).to_dict()


async def search_contacts(ctx, args):
    term = args["searchTerm"].strip()
    api, tenant_id = await _xero(ctx)
    limit = args.get("limit", 10)
    response = await ctx.call_upstream(
        lambda: api.get_contacts(tenant_id, search_term=term, page=1, page_size=limit), "Xero get_contacts")
    contacts = [filter_contact_summary(c) for c in (getattr(response, "contacts", None) or [])][:limit]
    return {"searchTerm": term, "contacts": contacts, "count": len(contacts)}


async def get_organisation(ctx, args):
    api, tenant_id = await _xero(ctx)
    response = await ctx.call_upstream(lambda: api.get_organisations(tenant_id), "Xero get_organisations")
    organisations = getattr(response, "organisations", None) or []
    if not organisations:
        raise UpstreamPermanent("Xero returned no organisation for this connection.")
    return filter_organisation(organisations[0])


async def list_accounts(ctx, args):
    api, tenant_id = await _xero(ctx)
    kwargs = {}
    if args.get("accountType"):
        kwargs["where"] = f'Type=="{args["accountType"]}"'
    response = await ctx.call_upstream(lambda: api.get_accounts(tenant_id, **kwargs), "Xero get_accounts")
    accounts = [filter_account(a) for a in getattr(response, "accounts", None) or []]
    return {"accounts": accounts, "count": len(accounts)}


# ---- Write tools ----

def _idempotency_key() -> str:
    """One key per tool call; every retry of the same write reuses it so Xero applies it once."""
    return str(uuid.uuid4())


async def create_invoice_draft(ctx, args):
    if not args.get("contactId") and not args.get("contactName"):
        raise SchemaViolation("contactId", "or contactName is required")
    api, tenant_id = await _xero(ctx)
    contact = Contact(contact_id=args["contactId"]) if args.get("contactId") else Contact(name=args["contactName"])
    invoice = Invoice(
        type="ACCREC",
        contact=contact,
        status="DRAFT",
        line_items=[
            LineItem(
                description=li["description"],
                quantity=li.get("quantity", 1),
                unit_amount=li.get("unitAmount"),
                account_code=li.get("accountCode"),
                tax_type=li.get("taxType"),
            )
            for li in args["lineItems"]
        ],
    )
    if args.get("date"):
        invoice.date = _parse_iso_date(args["date"])
    if args.get("dueDate"):
        invoice.due_date = _parse_iso_date(args["dueDate"])
    if args.get("reference"):
        invoice.reference = args["reference"]
    key = _idempotency_key()
    response = await ctx.call_upstream(
        lambda: api.create_invoices(tenant_id, Invoices(invoices=[invoice]), idempotency_key=key), "Xero create_invoices")
    created = (getattr(response, "invoices", None) or [None])[0]
    return {"success": True, "invoice": filter_invoice_summary(created)}


async def create_contact(ctx, args):
    api, tenant_id = await _xero(ctx)
    contact = Contact(
        name=args["name"],
        email_address=args.get("emailAddress"),
        first_name=args.get("firstName"),
        last_name=args.get("lastName"),
    )
    key = _idempotency_key()
    response = await ctx.call_upstream(
        lambda: api.create_contacts(tenant_id, Contacts(contacts=[contact]), idempotency_key=key), "Xero create_contacts")
    created = (getattr(response, "contacts", None) or [None])[0]
    return {"success": True, "contact": filter_contact_summary(created)}


async def _change_invoice_status(ctx, args, new_status: str, allowed: Tuple[str, ...], verb: str):
    api, tenant_id = await _xero(ctx)
    invoice_id = args["invoiceId"]
    current = await _fetch_invoice(ctx, api, tenant_id, invoice_id)
    status = _status(current)
    if status not in allowed:
        raise InvalidState(
            f"Invoice {getattr(current, 'invoice_number', None) or invoice_id} is {status}; "
            f"only {' or '.join(allowed)} invoices can be {verb}."
        )
    snapshot_uri = await _snapshot(ctx, tenant_id, current)
    update = Invoices(invoices=[Invoice(invoice_id=invoice_id, status=new_status)])
    key = _idempotency_key()
    response = await ctx.call_upstream(
        lambda: api.update_invoice(tenant_id, invoice_id, update, idempotency_key=key), "Xero update_invoice")
    updated = (getattr(response, "invoices", None) or [current])[0]
    logger.info("Invoice %s moved from %s to %s for %s", invoice_id, status, new_status, ctx.user_id)
    return {"success": True, "invoice": filter_invoice_summary(updated), "previousState": snapshot_uri}


async def approve_invoice(ctx, args):
    return await _change_invoice_status(ctx, args, "AUTHORISED", ("DRAFT", "SUBMITTED"), "approved")


async def void_invoice(ctx, args):
    return await _change_invoice_status(ctx, args, "VOIDED", ("AUTHORISED",), "voided")


async def delete_draft_invoice(ctx, args):
    return await _change_invoice_status(ctx, args, "DELETED", ("DRAFT", "SUBMITTED"), "deleted")


async def record_payment(ctx, args):
    api, tenant_id = await _xero(ctx)
    invoice_id = args["invoiceId"]
    current = await _fetch_invoice(ctx, api, tenant_id, invoice_id)
    if _status(current) != "AUTHORISED":
        raise InvalidState(f"Payments can only be recorded against AUTHORISED invoices (this one is {_status(current)}).")
    amount_due = _as_float(getattr(current, "amount_due", None))
    if amount_due is not None and args["amount"] > amount_due:
        raise InvalidState(f"Payment of {args['amount']} exceeds the amount due ({amount_due}).")
    snapshot_uri = await _snapshot(ctx, tenant_id, current)
    payment = Payment(
        invoice=Invoice(invoice_id=invoice_id),
        account=Account(account_id=args["bankAccountId"]),
        amount=args["amount"],
        date=_parse_iso_date(args.get("date")) or date.today(),
        reference=args.get("reference"),
    )
    key = _idempotency_key()
    response = await ctx.call_upstream(
        lambda: api.create_payment(tenant_id, payment, idempotency_key=key), "Xero create_payment")
    created = (getattr(response, "payments", None) or [None])[0]
    return {
        "success": True,
        "paymentId": getattr(created, "payment_id", None),
        "amount": args["amount"],
        "invoiceId": invoice_id,
        "previousState": snapshot_uri,
    }


# ---- Registry entries ----

_DATE_RANGE = {
    "fromDate": date_string("Start date (YYYY-MM-DD)"),
    "toDate": date_string("End date (YYYY-MM-DD)"),
}
_FULL_REPORT = BooleanSchema(
    description="Store the complete report and return a 10-row preview plus a resource URI", default=False)


def _tool(short_name, category, description, properties=None, required=(), level=PermissionLevel.READ_ONLY,
          handler=None) -> ToolDefinition:
    return ToolDefinition(
        short_name=short_name,
        provider="xero",
        category=category,
        description=description,
        input_schema=object_schema(properties, required),
        required_level=level,
        handler=handler,
    )


XERO_TOOLS = [
    _tool("get_invoices", "invoices",
          "Get invoices from Xero. Use status 'AUTHORISED' for unpaid, 'PAID' for paid. Paginated with cursor.",
          {
              "status": StringSchema(description="Filter by status", enum=INVOICE_STATUSES),
              "contactName": StringSchema(description="Only invoices whose contact name contains this text"),
              **_DATE_RANGE,
              "detail": BooleanSchema(description="Include line items", default=False),
              "cursor": CURSOR_PROPERTY,
          },
          handler=get_invoices),
    _tool("get_aged_receivables", "invoices", "Get aged receivables - who owes you money and how overdue",
          {"date": date_string("Date for aging (YYYY-MM-DD), defaults to today")},
          handler=get_aged_receivables),
    _tool("get_aged_payables", "invoices", "Get aged payables - who you owe money to and how overdue",
          {"date": date_string("Date for aging (YYYY-MM-DD), defaults to today")},
          handler=get_aged_payables),
    _tool("get_profit_and_loss", "reports", "Get profit & loss report for a date range",
          {
              **_DATE_RANGE,
              "periods": IntegerSchema(description="Number of comparison periods", minimum=1, maximum=11),
              "timeframe": StringSchema(description="Period length", enum=("MONTH", "QUARTER", "YEAR")),
              "fullReport": _FULL_REPORT,
          },
          handler=get_profit_and_loss),
    _tool("get_balance_sheet", "reports", "Get balance sheet as of a specific date",
          {
              "date": date_string("Date (YYYY-MM-DD), defaults to today"),
              "periods": IntegerSchema(description="Number of comparison periods", minimum=1, maximum=11),
              "fullReport": _FULL_REPORT,
          },
          handler=get_balance_sheet),
    _tool("get_bank_accounts", "banking", "Get the organisation's bank accounts", handler=get_bank_accounts),
    _tool("get_bank_transactions", "banking", "Get bank transactions. Paginated with cursor.",
          {**_DATE_RANGE, "bankAccountId": StringSchema(description="Only this bank account"), "cursor": CURSOR_PROPERTY},
          handler=get_bank_transactions),
    _tool("get_contacts", "contacts", "Get customers and suppliers. Paginated with cursor.",
          {
              "isCustomer": BooleanSchema(description="Only customers"),
              "isSupplier": BooleanSchema(description="Only suppliers"),
              "cursor": CURSOR_PROPERTY,
          },
          handler=get_contacts),
    _tool("search_contacts", "contacts", "Search for a customer or supplier by name",
          {
              "searchTerm": StringSchema(description="Name to search for", min_length=1, pattern=r"\S"),
              "limit": IntegerSchema(description="Max contacts to return (default: 10)", minimum=1, maximum=50,
                                     default=10),
          },
          required=("searchTerm",), handler=search_contacts),
    _tool("get_organisation", "organisation", "Get company details from Xero", handler=get_organisation),
    _tool("list_accounts", "accounts",
          "Get chart of accounts. Optionally filter by account type (BANK, CURRENT, EXPENSE, REVENUE, etc.)",
          {"accountType": StringSchema(description="Account type filter", enum=ACCOUNT_TYPES)},
          handler=list_accounts),
    _tool("get_expenses", "expenses", "List spend-money expenses with optional filters. Paginated with cursor.",
          {**_DATE_RANGE, "category": StringSchema(description="Filter by account code"), "cursor": CURSOR_PROPERTY},
          handler=get_expenses),
    _tool("create_invoice_draft", "invoices", "Create a DRAFT sales invoice. Nothing is sent to the customer.",
          {
              "contactId": StringSchema(description="Existing contact ID"),
              "contactName": StringSchema(description="Contact name (used when contactId is omitted)"),
              "date": date_string("Invoice date (YYYY-MM-DD)"),
              "dueDate": date_string("Due date (YYYY-MM-DD)"),
              "reference": StringSchema(description="Reference shown on the invoice"),
              "lineItems": ArraySchema(
                  items=object_schema(
                      {
                          "description": StringSchema(min_length=1),
                          "quantity": NumberSchema(minimum=0),
                          "unitAmount": NumberSchema(),
                          "accountCode": StringSchema(),
                          "taxType": StringSchema(),
                      },
                      required=("description",),
                  ),
                  min_items=1,
              ),
          },
          required=("lineItems",), level=PermissionLevel.CREATE_DRAFT, handler=create_invoice_draft),
    _tool("create_contact", "contacts", "Create a new contact",
          {
              "name": StringSchema(description="Contact name", min_length=1),
              "emailAddress": StringSchema(description="Email address"),
              "firstName": StringSchema(),
              "lastName": StringSchema(),
          },
          required=("name",), level=PermissionLevel.CREATE_DRAFT, handler=create_contact),
    _tool("approve_invoice", "invoices", "Approve a DRAFT or SUBMITTED invoice (status becomes AUTHORISED)",
          {"invoiceId": StringSchema(description="Invoice ID")},
          required=("invoiceId",), level=PermissionLevel.APPROVE_UPDATE, handler=approve_invoice),
    _tool("record_payment", "payments", "Record a payment against an AUTHORISED invoice",
          {
              "invoiceId": StringSchema(description="Invoice ID"),
              "bankAccountId": StringSchema(description="Bank account the money went into or out of"),
              "amount": NumberSchema(description="Payment amount", minimum=0.01),
              "date": date_string("Payment date (YYYY-MM-DD), defaults to today"),
              "reference": StringSchema(),
          },
          required=("invoiceId", "bankAccountId", "amount"), level=PermissionLevel.APPROVE_UPDATE,
          handler=record_payment),
    _tool("void_invoice", "invoices", "Void an AUTHORISED invoice. This cannot be undone.",
          {"invoiceId": StringSchema(description="Invoice ID")},
          required=("invoiceId",), level=PermissionLevel.FULL_ACCESS, handler=void_invoice),
    _tool("delete_draft_invoice", "invoices", "Delete a DRAFT or SUBMITTED invoice",
          {"invoiceId": StringSchema(description="Invoice ID")},
          required=("invoiceId",), level=PermissionLevel.FULL_ACCESS, handler=delete_draft_invoice),
]
