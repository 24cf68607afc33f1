from __future__ import annotations
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional
from .contract import StagedSheet, StagedWorkbook, row_from_dict
from .header_detect import normalize_header
from .utils import load_json, save_json, sessions_dir

logger = logging.getLogger(__name__)

LAST_SLOT = "_last"


def _slot_name(file_name: Optional[str]) -> str:
    base = (file_name or "workbook").strip().lower()
    # keep it a plain file name on every OS
    return re.sub(r"[^0-9a-z._-]+", "_", base) or "workbook"


def _slot_path(slot: str, base_dir: Optional[Path] = None) -> Path:
    return (base_dir or sessions_dir()) / f"{slot}.json"


def _workbook_from_dict(obj: Any) -> Optional[StagedWorkbook]:
    # snapshots from older versions may use alias header keys or miss fields
    if not isinstance(obj, dict) or not isinstance(obj.get("sheets"), list):
        return None
    sheets = []
    for s in obj["sheets"]:
        if not isinstance(s, dict):
            continue
        name = str(s.get("sheet_name") or s.get("sheetName") or s.get("name") or "").strip()
        if not name:
            continue
        rows = [row_from_dict(r) for r in s.get("rows") or [] if isinstance(r, dict) and r.get("origin_row")]
        sheets.append(StagedSheet(sheet_name=name, header=normalize_header(s.get("header") or {}), rows=rows))
    return StagedWorkbook(file_name=str(obj.get("file_name") or obj.get("fileName") or ""), sheets=sheets)


def save_session(staged: StagedWorkbook, also_as_last: bool = True, base_dir: Optional[Path] = None) -> Path:
    # Snapshot of the staged workbook (headers with operator edits included)
    payload: Dict[str, Any] = staged.to_dict()
    path = _slot_path(_slot_name(staged.file_name), base_dir)
    save_json(path, payload)
    if also_as_last:
        save_json(_slot_path(LAST_SLOT, base_dir), payload)
    logger.info("Import session saved: %s (%d sheet(s))", path.name, len(staged.sheets))
    return path


def load_session(file_name: Optional[str] = None, base_dir: Optional[Path] = None) -> Optional[StagedWorkbook]:
    # Snapshot for file_name, else the last saved one
    for slot in (_slot_name(file_name), LAST_SLOT):
        wb = _workbook_from_dict(load_json(_slot_path(slot, base_dir), None))
        if wb is not None:
            logger.info("Import session loaded from slot %s", slot)
            return wb
    return None


def clear_session(file_name: Optional[str] = None, base_dir: Optional[Path] = None) -> None:
    for slot in (_slot_name(file_name), LAST_SLOT):
        _slot_path(slot, base_dir).unlink(missing_ok=True)


def has_session(file_name: Optional[str] = None, base_dir: Optional[Path] = None) -> bool:
    return any(_slot_path(s, base_dir).exists() for s in (_slot_name(file_name), LAST_SLOT))
