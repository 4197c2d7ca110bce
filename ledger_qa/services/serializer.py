# =============================================================================
# Fact Serializer: Source Row → Deterministic Text
# =============================================================================
#
# Turns one source row into the "Fact" string that gets embedded, stored in
# `documents.content`, and later pasted verbatim into the prompt.
#
#   account_snapshots row {account_id, snapshot_date, balance}
#     ──lookup accounts──▶
#   Account Balance | account_name="Main Checking" | account_type="cash"
#                   | as_of="2025-03-31" | cash_balance=15900
#
# DESIGN DECISION: Names, not ids. Embeddings match words. A fact that only
# says `account_id=7f3c...` never surfaces for "what is our cash balance?",
# so bespoke templates dereference foreign keys to names and types. A
# required lookup that finds nothing aborts the row with DataIntegrityError;
# no partial fact is ever produced.
#
# DESIGN DECISION: Determinism. Identical row content yields an identical
# string: fixed template field order, row column order for the generic
# fallback, one null token, and one rendering per Python type (Decimal
# 15900.00 and float 15900.0 both render as 15900).
#
# TEMPLATES:
#   account_snapshots          Account Balance     (accounts: name, type)
#   monthly_expense_snapshots  Monthly Expense Snapshot
#   financial_kb               Formula
#   transactions               Transaction         (accounts; categories)
#   budgets                    Budget              (categories)
#   invoices                   Invoice             (customers)
#   bills                      Bill                (vendors)
#   anything else              TABLE | key=value | ...
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID

from ledger_qa.errors import DataIntegrityError
from ledger_qa.services.source_store import SourceStore

logger = logging.getLogger(__name__)

NULL_TOKEN = "null"

# Free-form blobs and audit timestamps: noise for retrieval, and timestamps
# would make a re-index of an untouched row look like a change.
NOISY_FIELDS = frozenset({"metadata", "embedding", "created_at", "updated_at"})

_SEPARATOR = " | "


@dataclass(frozen=True)
class ForeignKey:
    """A foreign-key column to dereference before rendering a template."""

    column: str
    table: str
    fields: tuple[str, ...]
    required: bool = True


# ---------------------------------------------------------------------------
# Value Rendering
# ---------------------------------------------------------------------------


def render_value(value: Any) -> str:
    """Render a scalar the same way on every run."""
    if value is None:
        return NULL_TOKEN
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return _format_decimal(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(
            value, sort_keys=True, ensure_ascii=False, default=render_value,
            separators=(",", ":"),
        )
    return str(value)


def quoted(value: Any) -> str:
    """Template rendering for text fields: "value", or the bare null token."""
    if value is None:
        return NULL_TOKEN
    return f'"{render_value(value)}"'


def json_value(value: Any) -> str:
    """Generic-fallback rendering: strings JSON-quoted, numbers bare."""
    if value is None or isinstance(value, (bool, int, float, Decimal)):
        return render_value(value)
    if isinstance(value, (dict, list, tuple)):
        return render_value(value)
    return json.dumps(render_value(value), ensure_ascii=False)


def _format_decimal(value: Decimal) -> str:
    if not value.is_finite():
        return str(value)
    text = format(value.normalize(), "f")
    return "0" if text in ("-0", "") else text


def fact(label: str, *pairs: tuple[str, str]) -> str:
    """Join a template label and pre-rendered key/value pairs."""
    return _SEPARATOR.join([label, *(f"{k}={v}" for k, v in pairs)])


def format_balance_snapshot(
    account_name: Any,
    account_type: Any,
    as_of: Any,
    balance: Any,
) -> str:
    """The point-in-time balance template, once the account is resolved."""
    return fact(
        "Account Balance",
        ("account_name", quoted(account_name)),
        ("account_type", quoted(account_type)),
        ("as_of", quoted(as_of)),
        ("cash_balance", render_value(balance)),
    )


def serialize_generic(table_name: str, row: Mapping[str, Any]) -> str:
    """Fallback for tables without a template: TABLE | key=value | ..."""
    pairs = [
        (key, json_value(value))
        for key, value in row.items()
        if key not in NOISY_FIELDS
    ]
    return fact(table_name.upper(), *pairs)


# ---------------------------------------------------------------------------
# Serializer
# ---------------------------------------------------------------------------

_Template = Callable[["Serializer", str, Mapping[str, Any]], Awaitable[str]]


class Serializer:
    """
    Source row → Fact string, with foreign-key dereferencing.

    Lookups are memoised for the lifetime of the instance (one indexing
    run); call clear_cache() to start a new run against fresh data.
    """

    def __init__(self, source: SourceStore) -> None:
        self._source = source
        self._cache: dict[tuple[str, str, tuple[str, ...]], dict[str, Any] | None] = {}

    def clear_cache(self) -> None:
        self._cache.clear()

    async def serialize(self, table_name: str, row: Mapping[str, Any]) -> str:
        """
        Serialise one row.

        Raises:
            DataIntegrityError: A required foreign key is null or dangling.
            UpstreamServiceError: The record store failed during a lookup.
        """
        template = _TEMPLATES.get(table_name)
        if template is None:
            return serialize_generic(table_name, row)
        return await template(self, table_name, row)

    async def resolve(
        self,
        table_name: str,
        row: Mapping[str, Any],
        fk: ForeignKey,
    ) -> dict[str, Any]:
        """
        Dereference `fk` on `row`.

        Returns the referenced fields; for an optional key whose column is
        null, every field maps to None.
        """
        ref_id = row.get(fk.column)
        if ref_id is None:
            if fk.required:
                raise DataIntegrityError(
                    table_name, row.get("id"), f"{fk.column} is null",
                )
            return dict.fromkeys(fk.fields)

        cache_key = (fk.table, str(ref_id), fk.fields)
        if cache_key not in self._cache:
            self._cache[cache_key] = await self._source.fetch_one(
                fk.table, ref_id, fk.fields,
            )
        found = self._cache[cache_key]

        if not found:
            raise DataIntegrityError(
                table_name,
                row.get("id"),
                f"{fk.column}={ref_id} not found in {fk.table}",
            )
        return found


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

_ACCOUNT = ForeignKey("account_id", "accounts", ("name", "type"))
_CATEGORY = ForeignKey("category_id", "categories", ("name", "type"), required=False)
_BUDGET_CATEGORY = ForeignKey("category_id", "categories", ("name",))
_CUSTOMER = ForeignKey("customer_id", "customers", ("name",))
_VENDOR = ForeignKey("vendor_id", "vendors", ("name",))


async def _account_snapshot(s: Serializer, t: str, row: Mapping[str, Any]) -> str:
    account = await s.resolve(t, row, _ACCOUNT)
    return format_balance_snapshot(
        account["name"], account["type"], row.get("snapshot_date"), row.get("balance"),
    )


async def _monthly_expense(s: Serializer, t: str, row: Mapping[str, Any]) -> str:
    return fact(
        "Monthly Expense Snapshot",
        ("period", _period(row)),
        ("total_expense", render_value(row.get("total_expense"))),
    )


async def _formula(s: Serializer, t: str, row: Mapping[str, Any]) -> str:
    return fact(
        "Formula",
        ("title", quoted(row.get("title"))),
        ("expression", quoted(row.get("content"))),
    )


async def _transaction(s: Serializer, t: str, row: Mapping[str, Any]) -> str:
    account = await s.resolve(t, row, _ACCOUNT)
    category = await s.resolve(t, row, _CATEGORY)
    return fact(
        "Transaction",
        ("date", quoted(row.get("date"))),
        ("account_name", quoted(account["name"])),
        ("category", quoted(category["name"])),
        ("category_type", quoted(category["type"])),
        ("amount", render_value(row.get("amount"))),
        ("description", quoted(row.get("description"))),
    )


async def _budget(s: Serializer, t: str, row: Mapping[str, Any]) -> str:
    category = await s.resolve(t, row, _BUDGET_CATEGORY)
    return fact(
        "Budget",
        ("category", quoted(category["name"])),
        ("period", _period(row)),
        ("amount", render_value(row.get("amount"))),
    )


async def _invoice(s: Serializer, t: str, row: Mapping[str, Any]) -> str:
    customer = await s.resolve(t, row, _CUSTOMER)
    return _receivable_or_payable("Invoice", "customer_name", customer["name"], row)


async def _bill(s: Serializer, t: str, row: Mapping[str, Any]) -> str:
    vendor = await s.resolve(t, row, _VENDOR)
    return _receivable_or_payable("Bill", "vendor_name", vendor["name"], row)


def _receivable_or_payable(label: str, party_key: str, party: Any, row: Mapping[str, Any]) -> str:
    return fact(
        label,
        (party_key, quoted(party)),
        ("date", quoted(row.get("date"))),
        ("due_date", quoted(row.get("due_date"))),
        ("total_amount", render_value(row.get("total_amount"))),
        ("status", quoted(row.get("status"))),
    )


def _period(row: Mapping[str, Any]) -> str:
    start = render_value(row.get("period_start"))
    end = render_value(row.get("period_end"))
    return f'"{start} to {end}"'


_TEMPLATES: dict[str, _Template] = {
    "account_snapshots": _account_snapshot,
    "monthly_expense_snapshots": _monthly_expense,
    "financial_kb": _formula,
    "transactions": _transaction,
    "budgets": _budget,
    "invoices": _invoice,
    "bills": _bill,
}
