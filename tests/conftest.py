from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from loanimport.contract import DEFAULT_COLUMNS, RawSheet, RawWorkbook
from loanimport.entity import ImportContext
from loanimport.retry import RetryPolicy
from loanimport.store import MemoryStore
from loanimport.utils import cell_ref_to_rc, col_to_index

FIELD_TO_COL = {field: col_to_index(letter) for letter, field in DEFAULT_COLUMNS.items()}
PAYMENTS_COL = col_to_index("Q")

FAST_RETRY = RetryPolicy(retries=2, base_delay=0.0, max_delay=0.0)


def sheet_grid(
    top: Optional[Dict[str, Any]] = None,
    payment_dates: Iterable[Any] = (),
    rows: Iterable[Dict[str, Any]] = (),
) -> List[List[Any]]:
    """
    Grid in the workbook layout:
      rows 1-2   header cells given as {"B1": "CENTRO", "M2": "RUTA 1"}
      row 3      column titles, payment dates from column Q
      row 4+     one dict per data row: {field: value, "payments": [amount per date]}
    """
    dates = list(payment_dates)
    rows = list(rows)
    width = PAYMENTS_COL + len(dates)
    grid: List[List[Any]] = [[None] * width for _ in range(3 + len(rows))]

    for ref, v in (top or {}).items():
        r, c = cell_ref_to_rc(ref)
        while c >= len(grid[r]):
            grid[r].append(None)
        grid[r][c] = v

    for field, c in FIELD_TO_COL.items():
        grid[2][c] = field.upper()
    for i, d in enumerate(dates):
        grid[2][PAYMENTS_COL + i] = d

    for i, cells in enumerate(rows):
        line = grid[3 + i]
        for field, v in cells.items():
            if field == "payments":
                for j, amount in enumerate(v):
                    line[PAYMENTS_COL + j] = amount
            else:
                line[FIELD_TO_COL[field]] = v
    return grid


def client_row(name: str, term: int = 14, quota: float = 100.0, **extra: Any) -> Dict[str, Any]:
    row = {
        "client_name": name,
        "weekly_quota": quota,
        "term_weeks": term,
        "disbursement_date": datetime(2025, 7, 1),
    }
    row.update(extra)
    return row


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def ctx(store: MemoryStore) -> ImportContext:
    return ImportContext(store=store, retry=FAST_RETRY, run_date="2025-08-01")


@pytest.fixture
def two_sheet_workbook() -> RawWorkbook:
    # sheet 1: three clients (term 14) with two payments each; sheet 2: one coordinator credit (term 10)
    s1 = sheet_grid(
        top={"A1": 1, "B1": "CENTRO", "M2": "RUTA 1"},
        payment_dates=[datetime(2025, 7, 8), datetime(2025, 7, 15)],
        rows=[
            client_row("JUAN PEREZ", folio="F-1", payments=[100, 100]),
            client_row("LUISA DIAZ", folio="F-2", payments=[100, 50]),
            client_row("PEDRO SOTO", folio="F-3", payments=[100, 100]),
        ],
    )
    s2 = sheet_grid(
        top={"A1": 2, "B1": "NORTE", "M2": "RUTA 2", "B2": "ANA RUIZ"},
        rows=[client_row("ANA RUIZ", term=10, quota=250.0, folio="F-9")],
    )
    return RawWorkbook(file_name="cartera.xlsx", sheets=[RawSheet("CENTRO", s1), RawSheet("NORTE", s2)])
