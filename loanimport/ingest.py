from __future__ import annotations
import logging
from io import BytesIO
from typing import List, Any, Optional, Iterable
import pandas as pd
from openpyxl import load_workbook
from .contract import RawSheet, RawWorkbook, WorkbookError

logger = logging.getLogger(__name__)
# =========================

# Excel: read a sheet as a matrix, unfolding merged cells
# =========================
def _sheet_to_matrix_with_merged(ws) -> List[List[Any]]:
    # blank cells inside a merged range take the range's top-left value
    fill = {}
    for rng in ws.merged_cells.ranges:
        min_col, min_row, max_col, max_row = rng.bounds
        top = ws.cell(min_row, min_col).value
        fill.update({(r, c): top for r in range(min_row, max_row + 1) for c in range(min_col, max_col + 1)})

    grid: List[List[Any]] = []
    for r, values in enumerate(ws.iter_rows(min_row=1, min_col=1, values_only=True), start=1):
        line = list(values)
        for c, v in enumerate(line, start=1):
            if (r, c) in fill and (v is None or str(v).strip() == ""):
                line[c - 1] = fill[(r, c)]
        grid.append(line)
    return grid


def _frame_to_matrix(df: pd.DataFrame) -> List[List[Any]]:
    # pandas fallback: NaN -> None, Timestamp -> datetime
    out = []
    for row in df.itertuples(index=False, name=None):
        vals = []
        for v in row:
            if v is None or (isinstance(v, float) and pd.isna(v)):
                vals.append(None)
            elif isinstance(v, pd.Timestamp):
                vals.append(v.to_pydatetime())
            else:
                vals.append(v)
        out.append(vals)
    return out


def _wanted(name: str, selected: Optional[Iterable[str]]) -> bool:
    if selected is None:
        return True
    keys = {str(s).strip().upper() for s in selected}
    return name.strip().upper() in keys


def list_sheet_names(data: bytes) -> List[str]:
    try:
        wb = load_workbook(BytesIO(data), read_only=True)
    except Exception as e:
        raise WorkbookError(f"Could not open workbook: {e}") from e
    try:
        return list(wb.sheetnames)
    finally:
        wb.close()
# =========================

# Main: upload -> raw workbook
# =========================
def load_workbook_from_bytes(data: bytes, file_name: str, sheet_names: Optional[Iterable[str]] = None) -> RawWorkbook:
    """
    Decodes an .xlsx upload into raw cell grids:
      RawWorkbook(file_name, sheets=[RawSheet(name, grid), ...])

    - grid covers the sheet's bounding range (row 1 / column A at index 0)
    - merged cells repeat their top-left value
    - dates stay datetime objects, numbers stay numbers
    sheet_names limits decoding to the selected tabs (case-insensitive).
    """
    try:
        wb = load_workbook(BytesIO(data), read_only=False, data_only=True)
    except Exception as e:
        raise WorkbookError(f"Could not open workbook {file_name!r}: {e}") from e

    sheets: List[RawSheet] = []
    for name in wb.sheetnames:
        if not _wanted(name, sheet_names):
            continue
        try:
            matrix = _sheet_to_matrix_with_merged(wb[name])
        except Exception:
            logger.warning("Sheet %r: merged-cell read failed, falling back to pandas", name, exc_info=True)
            df = pd.read_excel(BytesIO(data), sheet_name=name, header=None)
            matrix = _frame_to_matrix(df)
        sheets.append(RawSheet(name=name, grid=matrix))

    logger.info("Decoded %s: %d sheet(s)", file_name, len(sheets))
    return RawWorkbook(file_name=file_name, sheets=sheets)


def workbook_from_grids(file_name: str, grids: dict) -> RawWorkbook:
    # {sheet name: grid} already decoded elsewhere (tests, other readers)
    return RawWorkbook(file_name=file_name, sheets=[RawSheet(name=k, grid=v) for k, v in grids.items()])
