from __future__ import annotations

from datetime import datetime
from io import BytesIO

import pytest
from openpyxl import Workbook

from loanimport.contract import WorkbookError
from loanimport.extract import build_staging
from loanimport.ingest import list_sheet_names, load_workbook_from_bytes, workbook_from_grids


def _xlsx() -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Centro"
    ws["A1"] = 1
    ws["B1"] = "CENTRO"
    ws.merge_cells("B1:D1")
    ws["M2"] = "Ruta: 4"
    ws["Q3"] = datetime(2025, 7, 8)
    ws["B4"] = "JUAN PEREZ"
    ws["H4"] = 100
    ws["K4"] = 14
    ws["P4"] = datetime(2025, 7, 1)
    ws["Q4"] = 100
    other = wb.create_sheet("Notas")
    other["A1"] = "ignored"
    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()


def test_merged_cells_repeat_their_value() -> None:
    raw = load_workbook_from_bytes(_xlsx(), "cartera.xlsx")
    assert [s.name for s in raw.sheets] == ["Centro", "Notas"]
    sheet = raw.sheets[0]
    assert sheet.cell(0, 1) == sheet.cell(0, 3) == "CENTRO"
    assert isinstance(sheet.cell(2, 16), datetime)


def test_selected_sheets_only() -> None:
    raw = load_workbook_from_bytes(_xlsx(), "cartera.xlsx", sheet_names=["centro"])
    assert [s.name for s in raw.sheets] == ["Centro"]
    staged = build_staging(raw)
    row = staged.sheets[0].rows[0]
    assert staged.sheets[0].header.route_name == "4"
    assert (row.client_name, row.term_weeks, row.disbursement_date) == ("JUAN PEREZ", 14, "2025-07-01")
    assert [(p.date, p.amount) for p in row.payments] == [("2025-07-08", 100.0)]


def test_list_sheet_names() -> None:
    assert list_sheet_names(_xlsx()) == ["Centro", "Notas"]


def test_garbage_bytes_raise_workbook_error() -> None:
    with pytest.raises(WorkbookError):
        load_workbook_from_bytes(b"not a workbook", "x.xlsx")
    with pytest.raises(WorkbookError):
        list_sheet_names(b"")


def test_workbook_from_grids() -> None:
    raw = workbook_from_grids("g.xlsx", {"A": [["x"]], "B": []})
    assert raw.file_name == "g.xlsx"
    assert [s.name for s in raw.sheets] == ["A", "B"]
    assert raw.sheets[1].cell(5, 5) is None
