from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from conftest import FAST_RETRY, client_row, sheet_grid
from loanimport import commit as commit_mod
from loanimport.commit import PHASE_COUNTERS, PHASE_RUNNERS, check_phase_tables, commit_phase, commit_workbook, phase_totals
from loanimport.contract import RawSheet, RawWorkbook, StagedWorkbook, Subject, WorkbookError
from loanimport.entity import ImportContext
from loanimport.extract import build_staging
from loanimport.report import Phase
from loanimport.store import MemoryStore, StoreError

DATES = [datetime(2025, 7, d) for d in (1, 8, 15, 22, 29)]


class FailingStore(MemoryStore):
    """Rejects inserts into one table (optionally only for one name)."""

    def __init__(self, table: str, name: str = None):
        super().__init__()
        self.fail_table = table
        self.fail_name = name

    async def insert(self, table, values):
        if table == self.fail_table and (self.fail_name is None or values.get("name") == self.fail_name):
            raise StoreError(f"{table} insert failed: permission denied")
        return await super().insert(table, values)


def _run(ctx, staged, on_progress=None):
    return asyncio.run(commit_workbook(ctx, staged, on_progress=on_progress))


def test_phase_tables_are_exhaustive(monkeypatch: pytest.MonkeyPatch) -> None:
    assert set(PHASE_RUNNERS) == set(Phase)
    assert set(PHASE_COUNTERS) == set(Phase)
    check_phase_tables()
    monkeypatch.delitem(PHASE_RUNNERS, Phase.GUARANTORS)
    with pytest.raises(RuntimeError):
        check_phase_tables()


def test_end_to_end_two_sheets(two_sheet_workbook: RawWorkbook, store: MemoryStore, ctx: ImportContext) -> None:
    staged = build_staging(two_sheet_workbook)
    assert phase_totals(staged) == {
        Phase.POPULATIONS: 2,
        Phase.COORDINATORS: 1,
        Phase.CLIENTS: 3,
        Phase.GUARANTORS: 0,
        Phase.CREDITS: 4,
        Phase.PAYMENTS: 6,
    }

    report = _run(ctx, staged)
    assert report.global_ok is True
    for p in Phase:
        step = report.step(p)
        assert step.error == 0
        assert step.ok == step.total == step.done

    assert store.count("routes") == 2
    assert store.count("populations") == 2
    assert store.count("coordinators") == 1
    assert store.count("clients") == 3
    assert store.count("credits") == 4
    assert store.count("payments") == 6
    coord_credit = [c for c in store.rows("credits") if c["coordinator_id"] is not None]
    assert len(coord_credit) == 1
    assert coord_credit[0]["principal"] == 2500.0


def test_progress_is_monotonic_and_ends_at_100(two_sheet_workbook: RawWorkbook, ctx: ImportContext) -> None:
    seen = []
    _run(ctx, build_staging(two_sheet_workbook), on_progress=lambda pct, label, rep: seen.append((pct, label)))
    percents = [p for p, _ in seen]
    assert percents == sorted(percents)
    assert all(0 <= p <= 100 for p in percents)
    assert seen[-1] == (100, "Finished.")


def test_second_run_creates_nothing_new(two_sheet_workbook: RawWorkbook, store: MemoryStore, ctx: ImportContext) -> None:
    staged = build_staging(two_sheet_workbook)
    _run(ctx, staged)
    report = _run(ImportContext(store=store, retry=FAST_RETRY), staged)
    assert report.global_ok is True
    assert [store.count(t) for t in ("populations", "coordinators", "clients", "credits", "payments")] == [2, 1, 3, 4, 6]


def test_credits_rerun_in_same_context_does_not_duplicate(store: MemoryStore, ctx: ImportContext) -> None:
    # rows without folio have no natural key; the context remembers what it created
    grid = sheet_grid(top={"B1": "CENTRO", "M2": "R"}, rows=[client_row("JUAN"), client_row("LUISA")])
    staged = build_staging(RawWorkbook("x.xlsx", [RawSheet("CENTRO", grid)]))
    _run(ctx, staged)
    result = asyncio.run(commit_phase(ctx, staged, Phase.CREDITS))
    assert result.step.ok == 2 and result.step.error == 0
    assert store.count("credits") == 2


def test_name_match_row_is_a_coordinator_credit(store: MemoryStore, ctx: ImportContext) -> None:
    grid = sheet_grid(
        top={"B1": "CENTRO", "M2": "R", "B2": "Coordinadora: María López"},
        rows=[client_row("MARIA LOPEZ", term=13), client_row("JUAN", term=13)],
    )
    staged = build_staging(RawWorkbook("x.xlsx", [RawSheet("CENTRO", grid)]))
    assert staged.sheets[0].rows[0].subject == Subject.COORDINATOR
    report = _run(ctx, staged)
    assert report.step(Phase.CLIENTS).total == 1
    assert report.global_ok is True
    assert store.count("coordinators") == 1
    assert store.count("clients") == 1


def test_failed_credit_yields_one_payments_message() -> None:
    store = FailingStore("credits")
    ctx = ImportContext(store=store, retry=FAST_RETRY)
    grid = sheet_grid(top={"B1": "CENTRO", "M2": "R"}, payment_dates=DATES, rows=[client_row("JUAN", payments=[100] * 5)])
    staged = build_staging(RawWorkbook("x.xlsx", [RawSheet("CENTRO", grid)]))

    seen = []
    report = _run(ctx, staged, on_progress=lambda pct, label, rep: seen.append(pct))
    payments = report.errors_by_phase[Phase.PAYMENTS]
    assert len(payments) == 1
    assert "(5)" in payments[0]
    assert report.step(Phase.PAYMENTS).error == 1
    assert report.step(Phase.CREDITS).error == 1
    assert report.global_ok is False
    assert seen[-1] == 100
    assert "permission denied" in report.errors_by_phase[Phase.CREDITS][0]
    assert report.errors_by_phase[Phase.CREDITS][0].startswith("[CENTRO] Credits row #4:")


def test_failed_population_skips_only_its_rows(two_sheet_workbook: RawWorkbook) -> None:
    store = FailingStore("populations", name="CENTRO")
    ctx = ImportContext(store=store, retry=FAST_RETRY)
    report = _run(ctx, build_staging(two_sheet_workbook))

    assert report.step(Phase.POPULATIONS).ok == 1
    assert report.step(Phase.POPULATIONS).error == 1
    clients = report.errors_by_phase[Phase.CLIENTS]
    assert len(clients) == 3
    assert all("population was not registered" in m for m in clients)
    # the other sheet goes through
    assert report.step(Phase.CREDITS).ok == 1
    assert report.step(Phase.CREDITS).error == 3
    assert report.step(Phase.PAYMENTS).error == 3
    assert store.count("credits") == 1


def test_client_rows_with_and_without_id_share_one_client(store: MemoryStore, ctx: ImportContext) -> None:
    grid = sheet_grid(
        top={"B1": "CENTRO", "M2": "R"},
        rows=[client_row("JUAN PEREZ", client_national_id="ABC123"), client_row("Juan Perez")],
    )
    report = _run(ctx, build_staging(RawWorkbook("x.xlsx", [RawSheet("CENTRO", grid)])))
    assert report.global_ok is True
    assert store.count("clients") == 1
    assert store.rows("clients")[0]["national_id"] == "ABC123"
    assert store.count("credits") == 2


def test_coordinator_from_row_name_is_warned(store: MemoryStore, ctx: ImportContext) -> None:
    grid = sheet_grid(top={"B1": "CENTRO", "M2": "R"}, rows=[client_row("ANA RUIZ", term=10)])
    report = _run(ctx, build_staging(RawWorkbook("x.xlsx", [RawSheet("CENTRO", grid)])))
    assert report.global_ok is True
    assert report.step(Phase.CREDITS).warn == 1
    assert "declares none" in report.warnings_by_phase[Phase.CREDITS][0]
    assert store.rows("coordinators")[0]["name"] == "ANA RUIZ"


def test_warnings_do_not_flip_global_ok(store: MemoryStore, ctx: ImportContext) -> None:
    grid = sheet_grid(top={"B1": "CENTRO"}, rows=[client_row("JUAN", term=20, disbursement_date=None)])
    report = _run(ctx, build_staging(RawWorkbook("x.xlsx", [RawSheet("CENTRO", grid)])))
    assert report.global_ok is True
    assert report.step(Phase.POPULATIONS).warn == 1
    assert report.step(Phase.CLIENTS).warn == 1
    assert report.step(Phase.CREDITS).warn == 1
    assert store.rows("credits")[0]["disbursement_date"] == ctx.run_date


def test_invalid_row_is_a_row_error(ctx: ImportContext) -> None:
    grid = sheet_grid(top={"B1": "CENTRO", "M2": "R"}, rows=[client_row("JUAN", quota=None), client_row("LUISA")])
    report = _run(ctx, build_staging(RawWorkbook("x.xlsx", [RawSheet("CENTRO", grid)])))
    assert report.step(Phase.CREDITS).ok == 1
    assert report.step(Phase.CREDITS).error == 1
    assert "weekly quota" in report.errors_by_phase[Phase.CREDITS][0]


def test_catastrophic_phase_failure_is_folded(monkeypatch: pytest.MonkeyPatch, two_sheet_workbook: RawWorkbook, ctx: ImportContext) -> None:
    async def boom(run):
        raise RuntimeError("store went away")

    monkeypatch.setitem(commit_mod.PHASE_RUNNERS, Phase.CLIENTS, boom)
    report = _run(ctx, build_staging(two_sheet_workbook))
    assert report.step(Phase.CLIENTS).error == 3
    assert len(report.errors_by_phase[Phase.CLIENTS]) == 1
    assert report.global_ok is False
    # later phases still run
    assert report.step(Phase.CREDITS).ok == 4


def test_catastrophic_failure_on_empty_phase_still_counts(monkeypatch: pytest.MonkeyPatch, two_sheet_workbook: RawWorkbook, ctx: ImportContext) -> None:
    async def boom(run):
        raise RuntimeError("no guarantor table")

    monkeypatch.setitem(commit_mod.PHASE_RUNNERS, Phase.GUARANTORS, boom)
    report = _run(ctx, build_staging(two_sheet_workbook))
    assert report.step(Phase.GUARANTORS).error == 1
    assert report.global_ok is False


def test_empty_workbook_fails_before_any_phase(ctx: ImportContext) -> None:
    with pytest.raises(WorkbookError):
        _run(ctx, StagedWorkbook(file_name="empty.xlsx"))
    with pytest.raises(WorkbookError):
        asyncio.run(commit_phase(ctx, StagedWorkbook(file_name="empty.xlsx"), Phase.CLIENTS))


def test_single_phase_run_replaces_only_its_entry(two_sheet_workbook: RawWorkbook, ctx: ImportContext) -> None:
    staged = build_staging(two_sheet_workbook)
    report = _run(ctx, staged)
    before = report.step(Phase.CREDITS)

    ticks = []
    result = asyncio.run(commit_phase(ctx, staged, Phase.CLIENTS, report=report, on_tick=lambda d, t: ticks.append((d, t))))
    assert result.step.total == 3 and result.step.ok == 3
    assert ticks[-1] == (3, 3)
    assert report.step(Phase.CLIENTS) is result.step
    assert report.step(Phase.CREDITS) is before


def test_single_phase_payments_recovers_credits_by_folio(two_sheet_workbook: RawWorkbook, store: MemoryStore, ctx: ImportContext) -> None:
    staged = build_staging(two_sheet_workbook)
    _run(ctx, staged)
    fresh = ImportContext(store=store, retry=FAST_RETRY)
    result = asyncio.run(commit_phase(fresh, staged, Phase.PAYMENTS))
    assert result.step.ok == 6
    assert result.errors == []
    assert store.count("payments") == 6
    assert store.count("credits") == 4


def test_single_phase_payments_without_credit_is_aggregated(store: MemoryStore, ctx: ImportContext) -> None:
    grid = sheet_grid(top={"B1": "CENTRO"}, payment_dates=DATES[:2], rows=[client_row("JUAN", payments=[10, 20])])
    staged = build_staging(RawWorkbook("x.xlsx", [RawSheet("CENTRO", grid)]))
    result = asyncio.run(commit_phase(ctx, staged, "Payments"))
    assert result.step.error == 1
    assert len(result.errors) == 1 and "(2)" in result.errors[0]
    assert store.count("payments") == 0
