"""
This package contains:
- workbook decoding (XLSX -> raw cell grids)
- sheet header normalization (two fixed layouts)
- row staging and subject classification
- idempotent entity resolution against a store
- the six-phase commit and its report
- report export and import-session snapshots
"""
from .ingest import list_sheet_names, load_workbook_from_bytes
from .header_detect import normalize_header, patch_header, read_sheet_header, select_layout
from .extract import build_staging, classify_subject
from .validate import validate_workbook
from .store import MemoryStore, SqliteStore, StoreError
from .entity import ImportContext
from .commit import commit_phase, commit_workbook, phase_totals
from .report import CommitReport, Phase, StepReport
from .export import export_report_to_excel_bytes
from .session import clear_session, has_session, load_session, save_session

__all__ = [
    "list_sheet_names",
    "load_workbook_from_bytes",
    "normalize_header",
    "patch_header",
    "read_sheet_header",
    "select_layout",
    "build_staging",
    "classify_subject",
    "validate_workbook",
    "MemoryStore",
    "SqliteStore",
    "StoreError",
    "ImportContext",
    "commit_phase",
    "commit_workbook",
    "phase_totals",
    "CommitReport",
    "Phase",
    "StepReport",
    "export_report_to_excel_bytes",
    "clear_session",
    "has_session",
    "load_session",
    "save_session",
]
