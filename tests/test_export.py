from __future__ import annotations

from io import BytesIO

from openpyxl import load_workbook

from loanimport.export import export_report_to_excel_bytes, staged_credits_frame, staged_payments_frame, summary_frame
from loanimport.extract import build_staging
from loanimport.report import CommitReport, Phase, PhaseResult, StepReport


def _report() -> CommitReport:
    rep = CommitReport.with_totals({Phase.CLIENTS: 2})
    clients = StepReport(phase=Phase.CLIENTS, total=2)
    clients.add_ok()
    clients.add_error()
    rep.replace_phase(PhaseResult(step=clients, errors=["[A] Clients row #4: client 'X': population was not registered (boom)"]))
    return rep


def test_workbook_has_summary_and_messages() -> None:
    data = export_report_to_excel_bytes(_report())
    assert data[:2] == b"PK"
    wb = load_workbook(BytesIO(data))
    assert wb.sheetnames == ["Summary", "Messages"]
    assert wb["Summary"]["A1"].value == "GLOBAL_OK: NO"
    assert wb["Summary"]["A3"].value == "phase"
    assert wb["Messages"]["B2"].value == "error"


def test_staged_sheets_are_added(two_sheet_workbook) -> None:
    staged = build_staging(two_sheet_workbook)
    data = export_report_to_excel_bytes(CommitReport.with_totals({}), staged)
    wb = load_workbook(BytesIO(data))
    assert wb.sheetnames == ["Summary", "Messages", "Credits", "Payments"]
    assert wb["Summary"]["A1"].value == "GLOBAL_OK: YES"
    assert wb["Payments"].max_row == 1 + 6


def test_frames() -> None:
    df = summary_frame(_report())
    assert list(df["phase"]) == [p.value for p in Phase]
    assert int(df.loc[df["phase"] == "Clients", "error"].iloc[0]) == 1


def test_staged_frames(two_sheet_workbook) -> None:
    staged = build_staging(two_sheet_workbook)
    credits = staged_credits_frame(staged)
    assert len(credits) == 4
    assert list(credits["paid_total"]) == [200.0, 150.0, 200.0, 0.0]
    assert list(credits["subject"])[-1] == "coordinator"
    payments = staged_payments_frame(staged)
    assert set(payments["date"]) == {"2025-07-08", "2025-07-15"}
