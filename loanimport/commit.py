"""
Phased commit of a staged workbook:

  Populations -> Coordinators -> Clients -> Guarantors -> Credits -> Payments

Phases run one after another and units inside a phase one at a time. A failing
unit becomes a report entry and the loop goes on; later phases skip only the
rows whose own prerequisite failed. Nothing here is transactional: a partial
run leaves what it committed, and rerunning is safe because every ensure_* is
idempotent.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Tuple
from .contract import StagedRow, StagedSheet, StagedWorkbook, WorkbookError
from .entity import (
    ImportContext,
    RowKey,
    ensure_client,
    ensure_coordinator,
    ensure_credit,
    ensure_guarantor,
    ensure_header_coordinator,
    ensure_payment,
    ensure_population,
    ensure_route,
    credit_values,
    find_credit_by_folio,
    find_population,
    link_guarantor,
    similarity,
)
from .extract import term_subject
from .report import PHASES, CommitReport, Phase, PhaseResult, StepReport
from .utils import load_json, rules_path

logger = logging.getLogger(__name__)

RULES = load_json(rules_path(), {})

ProgressFn = Callable[[int, str, CommitReport], None]  # (percent, label, report snapshot)
TickFn = Callable[[int, int], None]                     # (processed in phase, phase total)

PHASE_LABELS = {
    Phase.POPULATIONS: "Creating populations...",
    Phase.COORDINATORS: "Creating coordinators...",
    Phase.CLIENTS: "Creating clients...",
    Phase.GUARANTORS: "Creating guarantors...",
    Phase.CREDITS: "Creating credits...",
    Phase.PAYMENTS: "Registering payments...",
}


def _fuzzy_threshold() -> int:
    return int(RULES.get("coordinator_fuzzy_threshold") or 90)


def _describe(e: BaseException) -> str:
    return str(e) or type(e).__name__


def _rows(workbook: StagedWorkbook) -> Iterator[Tuple[StagedSheet, StagedRow]]:
    for sheet in workbook.sheets:
        for row in sheet.rows:
            yield sheet, row


def _row_key(sheet: StagedSheet, row: StagedRow) -> RowKey:
    return (sheet.sheet_name, row.origin_row)
# =========================

# Totals (fixed denominators, computed once from the staged snapshot)
# =========================
PHASE_COUNTERS: Dict[Phase, Callable[[StagedWorkbook], int]] = {
    Phase.POPULATIONS: lambda wb: len(wb.sheets),
    Phase.COORDINATORS: lambda wb: sum(1 for s in wb.sheets if s.header.coordinator_name),
    Phase.CLIENTS: lambda wb: sum(1 for _, r in _rows(wb) if not r.is_coordinator),
    Phase.GUARANTORS: lambda wb: sum(1 for _, r in _rows(wb) if r.guarantor_name),
    Phase.CREDITS: lambda wb: sum(1 for _ in _rows(wb)),
    Phase.PAYMENTS: lambda wb: sum(len(r.payments) for _, r in _rows(wb)),
}


def phase_totals(workbook: StagedWorkbook) -> Dict[Phase, int]:
    return {p: PHASE_COUNTERS[p](workbook) for p in PHASES}
# =========================

# One phase in progress
# =========================
@dataclass
class PhaseRun:
    ctx: ImportContext
    workbook: StagedWorkbook
    step: StepReport
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    on_tick: Optional[TickFn] = None

    @property
    def phase(self) -> Phase:
        return self.step.phase

    def _tick(self) -> None:
        if self.on_tick:
            self.on_tick(min(self.step.processed, self.step.total), self.step.total)

    def ok(self) -> None:
        self.step.add_ok()
        self._tick()

    def fail(self, message: str, units: int = 1) -> None:
        logger.warning(message)
        self.step.add_error(units=units)
        self.errors.append(message)
        self._tick()

    def warn(self, message: str) -> None:
        self.step.add_warning()
        self.warnings.append(message)

    def where(self, sheet: StagedSheet, row: Optional[StagedRow] = None) -> str:
        if row is None:
            return f"[{sheet.sheet_name}] {self.phase.value}:"
        return f"[{sheet.sheet_name}] {self.phase.value} row #{row.origin_row}:"


async def _resolve_population(ctx: ImportContext, sheet: StagedSheet) -> Tuple[int, Optional[int]]:
    name = sheet.sheet_name
    ctx.require_ok(("population", name), "population")
    if name in ctx.population_ids:
        return ctx.population_ids[name], ctx.route_ids.get(name)
    route_id = await ensure_route(ctx, sheet.header.route_name) if sheet.header.route_name else None
    pid = await ensure_population(ctx, sheet.header, route_id)
    ctx.population_ids[name] = pid
    ctx.route_ids[name] = route_id
    return pid, route_id


async def _resolve_coordinator(ctx: ImportContext, sheet: StagedSheet, row: StagedRow, population_id: int) -> int:
    # coordinator credits belong to the sheet's declared coordinator, else to the row's own name
    header = sheet.header
    if not header.coordinator_name:
        return await ensure_coordinator(ctx, row.client_name, population_id)
    ctx.require_ok(("coordinator", sheet.sheet_name), "coordinator")
    cid = ctx.coordinator_ids.get(sheet.sheet_name)
    if cid is None:
        cid = await ensure_header_coordinator(ctx, header, population_id)
        ctx.coordinator_ids[sheet.sheet_name] = cid
    return cid


async def _resolve_client(ctx: ImportContext, sheet: StagedSheet, row: StagedRow, population_id: int) -> int:
    key = _row_key(sheet, row)
    ctx.require_ok(("client", *key), "client")
    cid = ctx.client_ids.get(key)
    if cid is None:
        cid = await ensure_client(ctx, row.client_name, population_id, row.client_national_id, row.client_address)
        ctx.client_ids[key] = cid
    return cid
# =========================

# Phase runners
# =========================
async def _run_populations(run: PhaseRun) -> None:
    ctx = run.ctx
    for sheet in run.workbook.sheets:
        try:
            header = sheet.header
            route_id = None
            if header.route_name:
                route_id = await ensure_route(ctx, header.route_name)
            pid = await ensure_population(ctx, header, route_id)
            ctx.population_ids[sheet.sheet_name] = pid
            ctx.route_ids[sheet.sheet_name] = route_id
            if route_id is None:
                run.warn(f"{run.where(sheet)} population {header.population_name!r} registered without route")
            run.ok()
        except Exception as e:
            ctx.fail(("population", sheet.sheet_name), _describe(e))
            run.fail(f"{run.where(sheet)} {_describe(e)}")


async def _run_coordinators(run: PhaseRun) -> None:
    ctx = run.ctx
    for sheet in run.workbook.sheets:
        if not sheet.header.coordinator_name:
            continue
        try:
            pid, _ = await _resolve_population(ctx, sheet)
            ctx.coordinator_ids[sheet.sheet_name] = await ensure_header_coordinator(ctx, sheet.header, pid)
            run.ok()
        except Exception as e:
            ctx.fail(("coordinator", sheet.sheet_name), _describe(e))
            run.fail(f"{run.where(sheet)} coordinator {sheet.header.coordinator_name!r}: {_describe(e)}")


async def _run_clients(run: PhaseRun) -> None:
    ctx = run.ctx
    threshold = _fuzzy_threshold()
    for sheet, row in _rows(run.workbook):
        if row.is_coordinator:
            continue
        key = _row_key(sheet, row)
        try:
            pid, _ = await _resolve_population(ctx, sheet)
            if term_subject(row.term_weeks) is None:
                run.warn(f"{run.where(sheet, row)} term {row.term_weeks} is not a known plan, registered as client")
            coord = sheet.header.coordinator_name
            if coord and similarity(row.client_name, coord) >= threshold:
                run.warn(f"{run.where(sheet, row)} client {row.client_name!r} looks like coordinator {coord!r}")

            gid = None
            if row.guarantor_name:
                try:
                    gid = await ensure_guarantor(ctx, row.guarantor_name, row.guarantor_national_id, row.guarantor_address)
                    ctx.guarantor_ids[key] = gid
                except Exception as e:
                    # the Guarantors phase retries it and reports the failure
                    run.warn(f"{run.where(sheet, row)} guarantor not linked: {_describe(e)}")

            ctx.client_ids[key] = await ensure_client(
                ctx, row.client_name, pid, row.client_national_id, row.client_address, gid
            )
            run.ok()
        except Exception as e:
            ctx.fail(("client", *key), _describe(e))
            run.fail(f"{run.where(sheet, row)} client {row.client_name!r}: {_describe(e)}")


async def _run_guarantors(run: PhaseRun) -> None:
    ctx = run.ctx
    for sheet, row in _rows(run.workbook):
        if not row.guarantor_name:
            continue
        key = _row_key(sheet, row)
        try:
            gid = await ensure_guarantor(ctx, row.guarantor_name, row.guarantor_national_id, row.guarantor_address)
            ctx.guarantor_ids[key] = gid
            cid = ctx.client_ids.get(key)
            if cid is not None:
                await link_guarantor(ctx, cid, gid)
            run.ok()
        except Exception as e:
            run.fail(f"{run.where(sheet, row)} guarantor {row.guarantor_name!r}: {_describe(e)}")


async def _run_credits(run: PhaseRun) -> None:
    ctx = run.ctx
    for sheet, row in _rows(run.workbook):
        key = _row_key(sheet, row)
        if key in ctx.credit_ids_by_row:
            # already created in this session
            run.ok()
            continue
        try:
            pid, route_id = await _resolve_population(ctx, sheet)
            if row.is_coordinator:
                subject = {"coordinator_id": await _resolve_coordinator(ctx, sheet, row, pid)}
            else:
                subject = {"client_id": await _resolve_client(ctx, sheet, row, pid)}
            values = credit_values(row, sheet.sheet_name, pid, route_id, ctx.run_date, **subject)
            ctx.credit_ids_by_row[key] = await ensure_credit(ctx, values)
            if row.is_coordinator and not sheet.header.coordinator_name:
                run.warn(f"{run.where(sheet, row)} coordinator {row.client_name!r} registered from the row, the sheet declares none")
            if not row.disbursement_date:
                run.warn(f"{run.where(sheet, row)} no disbursement date, using {ctx.run_date}")
            run.ok()
        except Exception as e:
            ctx.fail(("credit", *key), _describe(e))
            run.fail(f"{run.where(sheet, row)} {_describe(e)}")


async def _recover_credit(ctx: ImportContext, sheet: StagedSheet, row: StagedRow) -> Optional[int]:
    # single-phase runs: a folio identifies a credit created by an earlier session
    if not row.folio or ("credit", *_row_key(sheet, row)) in ctx.failures:
        return None
    pid = ctx.population_ids.get(sheet.sheet_name)
    if pid is None:
        pid = await find_population(ctx, sheet.header)
    credit_id = await find_credit_by_folio(ctx, row.folio, pid)
    if credit_id is not None:
        ctx.credit_ids_by_row[_row_key(sheet, row)] = credit_id
    return credit_id


async def _run_payments(run: PhaseRun) -> None:
    ctx = run.ctx
    for sheet, row in _rows(run.workbook):
        if not row.payments:
            continue
        n = len(row.payments)
        credit_id = ctx.credit_ids_by_row.get(_row_key(sheet, row))
        if credit_id is None:
            try:
                credit_id = await _recover_credit(ctx, sheet, row)
            except Exception as e:
                run.fail(f"{run.where(sheet, row)} credit lookup failed, payments omitted ({n}): {_describe(e)}", units=n)
                continue
        if credit_id is None:
            run.fail(f"{run.where(sheet, row)} no associated credit, payments omitted ({n})", units=n)
            continue

        for p in row.payments:
            try:
                await ensure_payment(ctx, credit_id, p)
                run.ok()
            except Exception as e:
                run.fail(f"{run.where(sheet, row)} payment {p.date} {p.amount:.2f}: {_describe(e)}")


Runner = Callable[[PhaseRun], Awaitable[None]]

PHASE_RUNNERS: Dict[Phase, Runner] = {
    Phase.POPULATIONS: _run_populations,
    Phase.COORDINATORS: _run_coordinators,
    Phase.CLIENTS: _run_clients,
    Phase.GUARANTORS: _run_guarantors,
    Phase.CREDITS: _run_credits,
    Phase.PAYMENTS: _run_payments,
}


def check_phase_tables() -> None:
    # every phase needs a counter and a runner
    for name, table in (("counter", PHASE_COUNTERS), ("runner", PHASE_RUNNERS)):
        missing = [p.value for p in Phase if p not in table]
        if missing:
            raise RuntimeError(f"No {name} for phase(s): {', '.join(missing)}")


check_phase_tables()
# =========================

# Orchestration
# =========================
async def _execute(run: PhaseRun) -> None:
    try:
        await PHASE_RUNNERS[run.phase](run)
    except Exception as e:
        # anything escaping the unit loop: fold what is left into one message
        remaining = max(run.step.total - run.step.processed, 0)
        msg = f"{run.phase.value}: phase failed, {remaining} unit(s) not processed: {_describe(e)}"
        logger.exception(msg)
        run.step.add_error(units=remaining, count=max(remaining, 1))
        run.errors.append(msg)
    logger.info(
        "%s: total=%d ok=%d warn=%d error=%d",
        run.phase.value, run.step.total, run.step.ok, run.step.warn, run.step.error,
    )


def _require_sheets(workbook: StagedWorkbook) -> None:
    if workbook is None or not workbook.sheets:
        raise WorkbookError("Workbook has no sheets to commit")


async def commit_workbook(
    ctx: ImportContext,
    workbook: StagedWorkbook,
    on_progress: Optional[ProgressFn] = None,
) -> CommitReport:
    """
    Full run: all six phases in order, one consolidated report.
    Only an empty sheet list raises; every other failure ends up in the report.
    """
    _require_sheets(workbook)
    report = CommitReport.with_totals(phase_totals(workbook))
    ctx.reset_failures()

    def emit(label: str) -> None:
        if on_progress:
            on_progress(report.progress_percent(), label, report)

    emit("Starting...")
    for phase in PHASES:
        label = PHASE_LABELS[phase]
        emit(label)
        run = PhaseRun(
            ctx=ctx,
            workbook=workbook,
            step=report.step(phase),
            errors=report.errors_by_phase[phase],
            warnings=report.warnings_by_phase[phase],
            on_tick=lambda _d, _t, label=label: emit(label),
        )
        await _execute(run)

    if on_progress:
        on_progress(100, "Finished.", report)
    logger.info("Commit of %s finished, global_ok=%s", workbook.file_name, report.global_ok)
    return report


async def commit_phase(
    ctx: ImportContext,
    workbook: StagedWorkbook,
    phase: Phase,
    report: Optional[CommitReport] = None,
    on_tick: Optional[TickFn] = None,
) -> PhaseResult:
    """
    Single-phase rerun with freshly computed totals for that phase.
    When a report is given, only this phase's entry in it is replaced.
    """
    _require_sheets(workbook)
    phase = Phase(phase)
    ctx.reset_failures()
    run = PhaseRun(
        ctx=ctx,
        workbook=workbook,
        step=StepReport(phase=phase, total=PHASE_COUNTERS[phase](workbook)),
        on_tick=on_tick,
    )
    await _execute(run)
    result = PhaseResult(step=run.step, errors=run.errors, warnings=run.warnings)
    if report is not None:
        report.replace_phase(result)
    return result


def format_phase_status(step: StepReport) -> str:
    # short line for status panels
    state = "error" if step.error else ("done" if step.complete else "pending")
    return f"{step.phase.value}: {step.ok}/{step.total} ({state}, {step.warn} warn, {step.error} error)"
