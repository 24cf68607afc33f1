"""
Entity resolution: one idempotent find-or-create per entity type.

Natural keys (normalized with norm_key, empty parts stored as ""):
  routes        name
  populations   (name, municipality, state)
  coordinators  (name, population_id)
  clients       national_id when present, else (name, population_id)
  guarantors    national_id when present, else name
                (a lookup without id matches the name whatever id the stored row has)
  credits       (folio, population_id) when the row carries a folio
  payments      (credit_id, payment_date, amount)

Every resolved id is memoized in the ImportContext passed through the calls;
nothing is cached at module level.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from rapidfuzz import fuzz
from .contract import Payment, SheetHeader, StagedRow
from .retry import RetryPolicy, call_with_retry
from .store import Store
from .utils import clean_str, norm_key, norm_national_id, norm_text, today_iso

logger = logging.getLogger(__name__)

RowKey = Tuple[str, int]  # (sheet name, origin row)


class RowDataError(ValueError):
    """Missing or invalid field on a staged row or header."""


class DependencyError(RuntimeError):
    """A prerequisite entity failed earlier in the same commit."""


def similarity(a: Any, b: Any) -> int:
    # 0..100 on the comparison form of both texts
    x, y = norm_text(a), norm_text(b)
    if not x or not y:
        return 0
    return int(fuzz.ratio(x, y))


@dataclass
class ImportContext:
    """
    Per-session state threaded through every resolver call.
    Two imports running side by side use two contexts and share nothing.
    """
    store: Store
    retry: RetryPolicy = field(default_factory=RetryPolicy.from_rules)
    run_date: str = field(default_factory=today_iso)
    memo: Dict[Tuple[Any, ...], int] = field(default_factory=dict)
    population_ids: Dict[str, int] = field(default_factory=dict)       # sheet -> id
    route_ids: Dict[str, Optional[int]] = field(default_factory=dict)  # sheet -> id
    coordinator_ids: Dict[str, int] = field(default_factory=dict)      # sheet -> id
    client_ids: Dict[RowKey, int] = field(default_factory=dict)
    guarantor_ids: Dict[RowKey, int] = field(default_factory=dict)
    credit_ids_by_row: Dict[RowKey, int] = field(default_factory=dict)
    failures: Dict[Tuple[Any, ...], str] = field(default_factory=dict)

    def fail(self, key: Tuple[Any, ...], message: str) -> None:
        self.failures[key] = message

    def require_ok(self, key: Tuple[Any, ...], what: str) -> None:
        msg = self.failures.get(key)
        if msg is not None:
            raise DependencyError(f"{what} was not registered ({msg})")

    def reset_failures(self) -> None:
        self.failures.clear()

    def forget_sheet(self, sheet_name: str) -> None:
        # after a header edit; created credits stay mapped so a rerun does not duplicate them
        self.population_ids.pop(sheet_name, None)
        self.route_ids.pop(sheet_name, None)
        self.coordinator_ids.pop(sheet_name, None)
        for k in [k for k in self.client_ids if k[0] == sheet_name]:
            del self.client_ids[k]
# =========================

# Generic find-or-create
# =========================
async def _find_or_create(
    ctx: ImportContext,
    table: str,
    key: Dict[str, Any],
    extra: Optional[Dict[str, Any]] = None,
    fill_missing: Tuple[str, ...] = (),
) -> int:
    """
    Lookup by natural key, insert when absent. The whole sequence is retried on
    transient errors; a retried attempt finds the row a lost reply already inserted.
    fill_missing: columns copied from extra onto an existing row where it has none.
    """
    memo_key = (table, *sorted(key.items()))
    if memo_key in ctx.memo:
        return ctx.memo[memo_key]
    extra = extra or {}

    async def attempt() -> int:
        found = await ctx.store.find_one(table, key)
        if found:
            patch = {c: extra[c] for c in fill_missing if extra.get(c) is not None and found.get(c) in (None, "")}
            if patch:
                await ctx.store.update(table, int(found["id"]), patch)
            logger.debug("%s %s reused id=%s", table, key, found["id"])
            return int(found["id"])
        rid = await ctx.store.insert(table, {**key, **extra})
        logger.debug("%s %s created id=%s", table, key, rid)
        return rid

    rid = await call_with_retry(attempt, ctx.retry)
    ctx.memo[memo_key] = rid
    return rid
# =========================

# Routes / populations / coordinators
# =========================
async def ensure_route(ctx: ImportContext, name: Any) -> int:
    k = norm_key(name)
    if not k:
        raise RowDataError("route name is empty")
    return await _find_or_create(ctx, "routes", {"name": k})


def _population_key(header: SheetHeader) -> Dict[str, str]:
    name = norm_key(header.population_name)
    if not name:
        raise RowDataError("population name is empty")
    return {"name": name, "municipality": norm_key(header.municipality), "state": norm_key(header.state)}


async def find_population(ctx: ImportContext, header: SheetHeader) -> Optional[int]:
    # lookup only, never inserts
    key = _population_key(header)
    memo_key = ("populations", *sorted(key.items()))
    if memo_key in ctx.memo:
        return ctx.memo[memo_key]
    found = await call_with_retry(lambda: ctx.store.find_one("populations", key), ctx.retry)
    return int(found["id"]) if found else None


async def ensure_population(ctx: ImportContext, header: SheetHeader, route_id: Optional[int] = None) -> int:
    key = _population_key(header)
    extra = {
        "number": clean_str(header.population_number),
        "route_id": route_id,
        "frequency": clean_str(header.frequency),
    }
    return await _find_or_create(ctx, "populations", key, extra, fill_missing=("route_id", "number", "frequency"))


async def ensure_coordinator(
    ctx: ImportContext,
    name: Any,
    population_id: int,
    phone: Any = None,
    address: Any = None,
    birthdate: Optional[str] = None,
) -> int:
    k = norm_key(name)
    if not k:
        raise RowDataError("coordinator name is empty")
    extra = {"phone": clean_str(phone), "address": clean_str(address), "birthdate": birthdate}
    return await _find_or_create(
        ctx, "coordinators", {"name": k, "population_id": population_id}, extra,
        fill_missing=("phone", "address", "birthdate"),
    )


async def ensure_header_coordinator(ctx: ImportContext, header: SheetHeader, population_id: int) -> int:
    return await ensure_coordinator(
        ctx,
        header.coordinator_name,
        population_id,
        phone=header.coordinator_phone,
        address=header.coordinator_address,
        birthdate=header.coordinator_birthdate,
    )
# =========================

# People keyed by national id or name
# =========================
async def _ensure_person(
    ctx: ImportContext,
    table: str,
    name_key: Dict[str, Any],
    national_id: str,
    extra: Dict[str, Any],
    fill_missing: Tuple[str, ...],
) -> int:
    if not national_id:
        # without an id the name is the key: any row with that name is this person
        return await _find_or_create(ctx, table, name_key, {"national_id": "", **extra}, fill_missing)

    memo_key = (table, ("national_id", national_id))
    if memo_key in ctx.memo:
        return ctx.memo[memo_key]

    async def attempt() -> int:
        found = await ctx.store.find_one(table, {"national_id": national_id})
        if found:
            return int(found["id"])
        # same person registered earlier without id: adopt it and back-fill the id
        found = await ctx.store.find_one(table, {**name_key, "national_id": ""})
        if found:
            await ctx.store.update(table, int(found["id"]), {"national_id": national_id})
            logger.debug("%s %s adopted id=%s, national id back-filled", table, name_key, found["id"])
            return int(found["id"])
        return await ctx.store.insert(table, {**name_key, "national_id": national_id, **extra})

    rid = await call_with_retry(attempt, ctx.retry)
    ctx.memo[memo_key] = rid
    return rid


async def ensure_guarantor(ctx: ImportContext, name: Any, national_id: Any = None, address: Any = None) -> int:
    k = norm_key(name)
    if not k:
        raise RowDataError("guarantor name is empty")
    return await _ensure_person(
        ctx, "guarantors", {"name": k}, norm_national_id(national_id),
        {"address": clean_str(address)}, ("address",),
    )


async def ensure_client(
    ctx: ImportContext,
    name: Any,
    population_id: int,
    national_id: Any = None,
    address: Any = None,
    guarantor_id: Optional[int] = None,
) -> int:
    k = norm_key(name)
    if not k:
        raise RowDataError("client name is empty")
    return await _ensure_person(
        ctx, "clients", {"name": k, "population_id": population_id}, norm_national_id(national_id),
        {"address": clean_str(address), "guarantor_id": guarantor_id}, ("address", "guarantor_id"),
    )


async def link_guarantor(ctx: ImportContext, client_id: int, guarantor_id: int) -> None:
    await call_with_retry(lambda: ctx.store.update("clients", client_id, {"guarantor_id": guarantor_id}), ctx.retry)
# =========================

# Credits / payments
# =========================
def credit_values(
    row: StagedRow,
    sheet_name: str,
    population_id: int,
    route_id: Optional[int],
    run_date: str,
    client_id: Optional[int] = None,
    coordinator_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Credit record for a staged row; principal = weekly quota x term."""
    if (client_id is None) == (coordinator_id is None):
        raise RowDataError("credit needs exactly one subject (client or coordinator)")
    term = row.term_weeks
    if not term or term <= 0:
        raise RowDataError(f"invalid term ({row.term_weeks})")
    quota = row.weekly_quota
    if not quota or quota <= 0:
        raise RowDataError(f"invalid weekly quota ({row.weekly_quota})")
    return {
        "folio": norm_key(row.folio),
        "client_id": client_id,
        "coordinator_id": coordinator_id,
        "population_id": population_id,
        "route_id": route_id,
        "term_weeks": int(term),
        "principal": round(float(quota) * int(term), 2),
        "weekly_quota": float(quota),
        "disbursement_date": row.disbursement_date or run_date,
        "total_due": row.total_due,
        "weeks_overdue": row.weeks_overdue,
        "overdue_balance": row.overdue_balance,
        "weekly_collection": row.weekly_collection,
        "penalty_text": row.penalty_text,
        "notes": row.notes,
        "sheet_name": sheet_name,
        "origin_row": row.origin_row,
    }


async def ensure_credit(ctx: ImportContext, values: Dict[str, Any]) -> int:
    """
    Folio-keyed credits are find-or-create (and retried). Credits without folio
    are a plain insert with no retry: there is no key to detect a duplicate.
    """
    if values.get("folio"):
        key = {"folio": values["folio"], "population_id": values["population_id"]}
        extra = {k: v for k, v in values.items() if k not in key}
        return await _find_or_create(ctx, "credits", key, extra)
    return await ctx.store.insert("credits", values)


async def find_credit_by_folio(ctx: ImportContext, folio: Any, population_id: Optional[int]) -> Optional[int]:
    k = norm_key(folio)
    if not k or population_id is None:
        return None
    found = await call_with_retry(
        lambda: ctx.store.find_one("credits", {"folio": k, "population_id": population_id}), ctx.retry
    )
    return int(found["id"]) if found else None


async def ensure_payment(ctx: ImportContext, credit_id: int, payment: Payment) -> int:
    if payment.amount is None or payment.amount <= 0:
        raise RowDataError(f"payment amount must be positive ({payment.amount})")
    key = {"credit_id": credit_id, "payment_date": payment.date, "amount": round(float(payment.amount), 2)}
    return await _find_or_create(ctx, "payments", key)
