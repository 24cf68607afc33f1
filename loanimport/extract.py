from __future__ import annotations
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from .contract import (
    DATE_FIELDS,
    DEFAULT_COLUMNS,
    DEFAULT_DATA_START_ROW,
    DEFAULT_HEADER_ROW,
    DEFAULT_PAYMENTS_START_COL,
    INT_FIELDS,
    NUMERIC_FIELDS,
    Payment,
    RawSheet,
    RawWorkbook,
    SheetHeader,
    StagedRow,
    StagedSheet,
    StagedWorkbook,
    Subject,
    WorkbookError,
)
from .header_detect import read_sheet_header
from .utils import (
    clean_str,
    col_to_index,
    index_to_col,
    load_json,
    norm_text,
    rules_path,
    to_int,
    to_number,
    try_parse_date,
)

logger = logging.getLogger(__name__)

RULES = load_json(rules_path(), {})

ProgressFn = Callable[[int, str], None]

DEFAULT_TERM_SUBJECT = {"9": "coordinator", "10": "coordinator", "13": "client", "14": "client"}
# =========================

# Rules
# =========================
def column_map() -> Dict[int, str]:
    # column index -> StagedRow field
    cols = RULES.get("columns") or DEFAULT_COLUMNS
    return {col_to_index(letter): field for letter, field in cols.items()}


def _row_setting(key: str, default: int) -> int:
    # 1-based row numbers in rules.json
    return int(RULES.get(key) or default) - 1


def payments_start_index() -> int:
    return col_to_index(RULES.get("payments_start_col") or DEFAULT_PAYMENTS_START_COL)


def term_subject(term: Optional[int]) -> Optional[Subject]:
    """Subject implied by the contracted term; None when the term says nothing."""
    if term is None:
        return None
    table = RULES.get("term_subject") or DEFAULT_TERM_SUBJECT
    v = table.get(str(int(term)))
    return Subject(v) if v else None


def classify_subject(client_name: Any, term: Optional[int], coordinator_name: Any) -> Subject:
    """
    First matching rule wins:
      1) name equals the sheet coordinator (case/accent-insensitive) -> coordinator
      2) term 9/10 -> coordinator, 13/14 -> client
      3) anything else -> client
    """
    name = norm_text(client_name)
    coord = norm_text(coordinator_name)
    if name and coord and name == coord:
        return Subject.COORDINATOR
    return term_subject(term) or Subject.CLIENT
# =========================

# Rows
# =========================
def extract_payment_columns(sheet: RawSheet) -> List[Tuple[int, str]]:
    """
    (column index, YYYY-MM-DD) for every payment column from the payments start column
    to the right edge. Columns whose header cell is not a date are skipped.
    """
    header_r = _row_setting("header_row", DEFAULT_HEADER_ROW)
    out = []
    for c in range(payments_start_index(), sheet.n_cols):
        d = try_parse_date(sheet.cell(header_r, c))
        if d:
            out.append((c, d))
        elif clean_str(sheet.cell(header_r, c)):
            logger.debug("Sheet %r: column %s header is not a date, ignored", sheet.name, index_to_col(c))
    return out


def _coerce(field: str, v: Any) -> Any:
    if field in NUMERIC_FIELDS:
        return to_number(v)
    if field in INT_FIELDS:
        return to_int(v)
    if field in DATE_FIELDS:
        return try_parse_date(v)
    return clean_str(v)


def _row_payments(sheet: RawSheet, r: int, pay_cols: List[Tuple[int, str]]) -> List[Payment]:
    # amounts under the same date are merged; zero and negative cells are not payments
    by_date: Dict[str, float] = {}
    for c, d in pay_cols:
        amount = to_number(sheet.cell(r, c))
        if amount is None or amount <= 0:
            continue
        by_date[d] = by_date.get(d, 0.0) + amount
    return [Payment(date=d, amount=round(a, 2)) for d, a in by_date.items()]


def extract_rows(sheet: RawSheet, header: SheetHeader) -> List[StagedRow]:
    cols = column_map()
    pay_cols = extract_payment_columns(sheet)
    start = _row_setting("data_start_row", DEFAULT_DATA_START_ROW)

    rows: List[StagedRow] = []
    for r in range(start, sheet.n_rows):
        raw = {field: sheet.cell(r, c) for c, field in cols.items()}
        if all(clean_str(v) is None for v in raw.values()):
            continue

        values = {field: _coerce(field, v) for field, v in raw.items()}
        row = StagedRow(origin_row=r + 1, **values)
        row.payments = _row_payments(sheet, r, pay_cols)
        row.subject = classify_subject(row.client_name, row.term_weeks, header.coordinator_name)
        rows.append(row)
    return rows


def is_coordinator_sheet(rows: List[StagedRow], header: SheetHeader) -> bool:
    # fallback signal only: any exact name match, or a majority of rows with a coordinator term
    coord = norm_text(header.coordinator_name)
    if coord and any(norm_text(r.client_name) == coord for r in rows):
        return True
    by_term = sum(1 for r in rows if term_subject(r.term_weeks) == Subject.COORDINATOR)
    return by_term > len(rows) / 2
# =========================

# Staging
# =========================
def stage_sheet(sheet: RawSheet) -> StagedSheet:
    header = read_sheet_header(sheet)
    rows = extract_rows(sheet, header)
    header.is_coordinator_sheet = is_coordinator_sheet(rows, header)
    logger.info(
        "Staged sheet %r: %d row(s), %d payment(s), coordinator=%s",
        sheet.name, len(rows), sum(len(r.payments) for r in rows), header.coordinator_name or "-",
    )
    return StagedSheet(sheet_name=sheet.name, header=header, rows=rows)


def build_staging(
    workbook: RawWorkbook,
    sheet_names: Optional[Iterable[str]] = None,
    on_progress: Optional[ProgressFn] = None,
) -> StagedWorkbook:
    """
    Raw workbook -> staged workbook, one StagedSheet per selected tab.
    sheet_names filters tabs (case-insensitive); None takes every tab.
    """
    if sheet_names is not None:
        wanted = {str(s).strip().upper() for s in sheet_names}
        sheets = [s for s in workbook.sheets if s.name.strip().upper() in wanted]
    else:
        sheets = list(workbook.sheets)
    if not sheets:
        raise WorkbookError("No sheets selected for import")

    staged = StagedWorkbook(file_name=workbook.file_name)
    for i, sheet in enumerate(sheets):
        if on_progress:
            on_progress(int(i * 100 / len(sheets)), f"Reading sheet {sheet.name}")
        staged.sheets.append(stage_sheet(sheet))

    if on_progress:
        on_progress(100, "Staging ready")
    return staged
