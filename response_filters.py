"""Token-lean projections of upstream objects.

Each filter keeps a fixed set of fields and drops everything else (nested
contacts, payments, attachments, tracking). They are pure: the same input
always produces the same output. Inputs may be xero-python models or plain
dicts with the same snake_case keys.
"""
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from utils import _as_float


def _get(obj: Any, name: str, default=None):
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    return _as_float(value)


def _contact_name(obj: Any) -> Optional[str]:
    return _get(_get(obj, "contact"), "name")


# ---- Invoices ----

def filter_invoice_summary(invoice: Any) -> Dict[str, Any]:
    return {
        "invoiceId": _plain(_get(invoice, "invoice_id")),
        "invoiceNumber": _get(invoice, "invoice_number"),
        "contact": _contact_name(invoice),
        "total": _number(_get(invoice, "total")),
        "amountDue": _number(_get(invoice, "amount_due")),
        "amountPaid": _number(_get(invoice, "amount_paid")),
        "status": _plain(_get(invoice, "status")),
        "date": _plain(_get(invoice, "date")),
        "dueDate": _plain(_get(invoice, "due_date")),
    }


def filter_invoice_detail(invoice: Any) -> Dict[str, Any]:
    # Line items keep amounts but not account codes, tax amounts or tracking
    detail = filter_invoice_summary(invoice)
    detail["lineItems"] = [
        {
            "description": _get(li, "description"),
            "quantity": _number(_get(li, "quantity")),
            "unitAmount": _number(_get(li, "unit_amount")),
            "lineAmount": _number(_get(li, "line_amount")),
            "taxType": _get(li, "tax_type"),
        }
        for li in (_get(invoice, "line_items") or [])
    ]
    return detail


# ---- Banking ----

def filter_bank_transaction_summary(transaction: Any) -> Dict[str, Any]:
    return {
        "bankTransactionId": _plain(_get(transaction, "bank_transaction_id")),
        "date": _plain(_get(transaction, "date")),
        "type": _plain(_get(transaction, "type")),
        "reference": _get(transaction, "reference"),
        "total": _number(_get(transaction, "total")),
        "status": _plain(_get(transaction, "status")),
        "contact": _contact_name(transaction),
        "isReconciled": _get(transaction, "is_reconciled"),
    }


def filter_expense_summary(expense: Any) -> Dict[str, Any]:
    line_items = _get(expense, "line_items") or []
    category = _get(expense, "account_code")
    if category is None and line_items:
        category = _get(line_items[0], "account_code")
    return {
        "expenseId": _plain(_get(expense, "bank_transaction_id") or _get(expense, "expense_id")),
        "date": _plain(_get(expense, "date")),
        "contact": _contact_name(expense),
        "total": _number(_get(expense, "total")),
        "status": _plain(_get(expense, "status")),
        "category": category,
    }


def filter_bank_account(account: Any) -> Dict[str, Any]:
    return {
        "accountId": _plain(_get(account, "account_id")),
        "code": _get(account, "code"),
        "name": _get(account, "name"),
        "bankAccountNumber": _get(account, "bank_account_number"),
        "currencyCode": _plain(_get(account, "currency_code")),
        "status": _plain(_get(account, "status")),
    }


# ---- Contacts / organisation / accounts ----

def filter_contact_summary(contact: Any) -> Dict[str, Any]:
    data = {
        "contactId": _plain(_get(contact, "contact_id")),
        "name": _get(contact, "name"),
        "emailAddress": _get(contact, "email_address"),
        "isCustomer": _get(contact, "is_customer"),
        "isSupplier": _get(contact, "is_supplier"),
        "status": _plain(_get(contact, "contact_status")),
    }
    return {k: v for k, v in data.items() if v not in (None, "")}


def filter_organisation(org: Any) -> Dict[str, Any]:
    return {
        "name": _get(org, "name"),
        "legalName": _get(org, "legal_name"),
        "countryCode": _plain(_get(org, "country_code")),
        "baseCurrency": _plain(_get(org, "base_currency")),
        "organisationType": _plain(_get(org, "organisation_type")),
        "taxNumber": _get(org, "tax_number"),
        "financialYearEndDay": _get(org, "financial_year_end_day"),
        "financialYearEndMonth": _get(org, "financial_year_end_month"),
        "isDemoCompany": _get(org, "is_demo_company"),
    }


def filter_account(account: Any) -> Dict[str, Any]:
    return {
        "accountId": _plain(_get(account, "account_id")),
        "code": _get(account, "code"),
        "name": _get(account, "name"),
        "type": _plain(_get(account, "type")),
        "status": _plain(_get(account, "status")),
        "taxType": _get(account, "tax_type"),
    }


# ---- Reports ----

def _cell_values(row: Any) -> List[Any]:
    return [_plain(_get(cell, "value")) for cell in (_get(row, "cells") or [])]


def _metric(row: Any, kind: str, section_title: Optional[str] = None) -> Dict[str, Any]:
    values = _cell_values(row)
    title = _get(row, "title") or (values[0] if values else None) or section_title or "Untitled"
    value = values[1] if len(values) > 1 else (values[0] if values else None)
    metric = {"title": title, "value": value, "type": kind}
    if section_title and section_title != title:
        metric["section"] = section_title
    return metric


def filter_report_summary(report: Any) -> Dict[str, Any]:
    """Header and summary rows only; the nested detail rows are dropped."""
    key_metrics: List[Dict[str, Any]] = []
    rows = _get(report, "rows") or []
    for row in rows:
        row_type = _plain(_get(row, "row_type"))
        if row_type == "Header":
            key_metrics.append(_metric(row, "header"))
        elif row_type == "SummaryRow":
            key_metrics.append(_metric(row, "summary"))
        elif row_type == "Section":
            section_title = _get(row, "title")
            for child in _get(row, "rows") or []:
                if _plain(_get(child, "row_type")) == "SummaryRow":
                    key_metrics.append(_metric(child, "summary", section_title))
    return {
        "reportName": _get(report, "report_name"),
        "reportDate": _plain(_get(report, "report_date")),
        "reportTitles": list(_get(report, "report_titles") or []),
        "updatedDateUtc": _plain(_get(report, "updated_date_utc")),
        "keyMetrics": key_metrics,
        "rowCount": len(rows),
    }


def flatten_report_rows(report: Any) -> List[Dict[str, Any]]:
    """Every data row of a report as {section, rowType, cells}, in document order."""
    flat: List[Dict[str, Any]] = []

    def _walk(rows, section):
        for row in rows or []:
            row_type = _plain(_get(row, "row_type"))
            if row_type == "Section":
                _walk(_get(row, "rows"), _get(row, "title") or section)
                continue
            flat.append({"section": section, "rowType": row_type, "cells": _cell_values(row)})

    _walk(_get(report, "rows"), None)
    return flat


def report_columns(report: Any) -> List[str]:
    for row in _get(report, "rows") or []:
        if _plain(_get(row, "row_type")) == "Header":
            return [str(v) if v is not None else "" for v in _cell_values(row)]
    return []


# ---- Gmail ----

def _header(headers: List[Dict[str, Any]], name: str) -> Optional[str]:
    for h in headers or []:
        if str(h.get("name", "")).lower() == name.lower():
            return h.get("value")
    return None


def _iter_parts(payload: Dict[str, Any]):
    yield payload
    for part in payload.get("parts") or []:
        yield from _iter_parts(part)


def message_attachments(message: Dict[str, Any]) -> List[Dict[str, Any]]:
    attachments = []
    for part in _iter_parts(message.get("payload") or {}):
        body = part.get("body") or {}
        if part.get("filename") and body.get("attachmentId"):
            attachments.append({
                "attachmentId": body["attachmentId"],
                "filename": part["filename"],
                "mimeType": part.get("mimeType"),
                "size": body.get("size", 0),
            })
    return attachments


def filter_message_summary(message: Dict[str, Any], snippet_chars: int = 100) -> Dict[str, Any]:
    headers = (message.get("payload") or {}).get("headers") or []
    snippet = message.get("snippet") or ""
    if len(snippet) > snippet_chars:
        snippet = snippet[:snippet_chars] + "..."
    return {
        "id": message.get("id"),
        "threadId": message.get("threadId"),
        "subject": _header(headers, "Subject"),
        "from": _header(headers, "From"),
        "date": _header(headers, "Date"),
        "hasAttachments": bool(message_attachments(message)) or "HAS_ATTACHMENT" in (message.get("labelIds") or []),
        "snippet": snippet,
    }
