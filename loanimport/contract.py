"""
Records shared by the import pipeline.

  raw workbook  -> RawWorkbook / RawSheet (cell grid exactly as decoded)
  staged        -> StagedWorkbook / StagedSheet / StagedRow (typed, not yet committed)

The staged workbook lives for one import session: the operator may patch sheet
headers (re-normalized on every edit), then it is committed once and discarded.
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

Grid = List[List[Any]]


class WorkbookError(ValueError):
    """Structurally invalid input: nothing to stage or commit."""


class Subject(str, Enum):
    CLIENT = "client"
    COORDINATOR = "coordinator"


@dataclass
class RawSheet:
    name: str
    grid: Grid

    @property
    def n_rows(self) -> int:
        return len(self.grid)

    @property
    def n_cols(self) -> int:
        return max((len(r) for r in self.grid), default=0)

    def cell(self, r: int, c: int) -> Any:
        # 0-based; anything outside the bounding range reads as empty
        if r < 0 or c < 0 or r >= len(self.grid):
            return None
        row = self.grid[r]
        return row[c] if c < len(row) else None


@dataclass
class RawWorkbook:
    file_name: str
    sheets: List[RawSheet]


@dataclass
class SheetHeader:
    population_number: Optional[str] = None
    population_name: Optional[str] = None
    municipality: Optional[str] = None
    state: Optional[str] = None
    route_name: Optional[str] = None
    frequency: Optional[str] = None
    coordinator_name: Optional[str] = None
    coordinator_phone: Optional[str] = None
    coordinator_address: Optional[str] = None
    birth_day: Optional[int] = None
    birth_month: Optional[int] = None
    coordinator_birthdate: Optional[str] = None  # YYYY-MM-DD
    is_coordinator_sheet: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Payment:
    date: str  # YYYY-MM-DD
    amount: float


@dataclass
class StagedRow:
    origin_row: int  # Excel row number (1-based)
    folio: Optional[str] = None
    client_name: Optional[str] = None
    client_national_id: Optional[str] = None
    client_address: Optional[str] = None
    guarantor_name: Optional[str] = None
    guarantor_national_id: Optional[str] = None
    guarantor_address: Optional[str] = None
    weekly_quota: Optional[float] = None
    penalty_text: Optional[str] = None
    total_due: Optional[float] = None
    term_weeks: Optional[int] = None
    weeks_overdue: Optional[int] = None
    overdue_balance: Optional[float] = None
    weekly_collection: Optional[float] = None
    notes: Optional[str] = None
    disbursement_date: Optional[str] = None
    payments: List[Payment] = field(default_factory=list)
    subject: Subject = Subject.CLIENT

    @property
    def is_coordinator(self) -> bool:
        return self.subject == Subject.COORDINATOR

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["subject"] = self.subject.value
        return d


@dataclass
class StagedSheet:
    sheet_name: str
    header: SheetHeader
    rows: List[StagedRow] = field(default_factory=list)


@dataclass
class StagedWorkbook:
    file_name: str
    sheets: List[StagedSheet] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "sheets": [
                {
                    "sheet_name": s.sheet_name,
                    "header": s.header.to_dict(),
                    "rows": [r.to_dict() for r in s.rows],
                }
                for s in self.sheets
            ],
        }


def row_from_dict(d: Dict[str, Any]) -> StagedRow:
    known = {k: v for k, v in d.items() if k in StagedRow.__dataclass_fields__}
    known["payments"] = [Payment(date=str(p["date"]), amount=float(p["amount"])) for p in d.get("payments") or []]
    known["subject"] = Subject(d.get("subject") or Subject.CLIENT.value)
    return StagedRow(**known)


# =========================

# Row column contract (A..P, payments from Q)
# =========================
COLUMN_FIELDS = (
    "folio",
    "client_name",
    "client_national_id",
    "client_address",
    "guarantor_name",
    "guarantor_national_id",
    "guarantor_address",
    "weekly_quota",
    "penalty_text",
    "total_due",
    "term_weeks",
    "weeks_overdue",
    "overdue_balance",
    "weekly_collection",
    "notes",
    "disbursement_date",
)

DEFAULT_COLUMNS = {
    "A": "folio",
    "B": "client_name",
    "C": "client_national_id",
    "D": "client_address",
    "E": "guarantor_name",
    "F": "guarantor_national_id",
    "G": "guarantor_address",
    "H": "weekly_quota",
    "I": "penalty_text",
    "J": "total_due",
    "K": "term_weeks",
    "L": "weeks_overdue",
    "M": "overdue_balance",
    "N": "weekly_collection",
    "O": "notes",
    "P": "disbursement_date",
}

NUMERIC_FIELDS = {"weekly_quota", "total_due", "overdue_balance", "weekly_collection"}
INT_FIELDS = {"term_weeks", "weeks_overdue"}
DATE_FIELDS = {"disbursement_date"}

DEFAULT_HEADER_ROW = 3          # 1-based; payment dates live in this row
DEFAULT_DATA_START_ROW = 4      # 1-based
DEFAULT_PAYMENTS_START_COL = "Q"
