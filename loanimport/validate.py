from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, asdict
from typing import List
import pandas as pd
from .contract import StagedWorkbook
from .entity import similarity
from .extract import term_subject
from .utils import load_json, norm_key, norm_text, rules_path

RULES = load_json(rules_path(), {})

ERROR = "error"
WARNING = "warning"


@dataclass
class ValidationIssue:
    entity: str   # population / route / coordinator / credit
    key: str      # sheet name, or "sheet!row"
    level: str    # error / warning
    message: str


def validate_workbook(staged: StagedWorkbook) -> List[ValidationIssue]:
    """
    Advisory pre-commit checks. Errors predict rows the commit will reject,
    warnings point at data the operator may want to fix first.
    """
    threshold = int(RULES.get("coordinator_fuzzy_threshold") or 90)
    issues: List[ValidationIssue] = []

    for sh in staged.sheets:
        h = sh.header
        name = sh.sheet_name
        if not h.population_name:
            issues.append(ValidationIssue("population", name, ERROR, "Missing population name (B1)"))
        if not h.route_name:
            issues.append(ValidationIssue("route", name, WARNING, "Missing route name"))

        folios = Counter(norm_key(r.folio) for r in sh.rows if r.folio)
        coord = norm_text(h.coordinator_name)

        for r in sh.rows:
            key = f"{name}!{r.origin_row}"
            if not r.client_name:
                issues.append(ValidationIssue("credit", key, ERROR, "Credit without borrower name"))
            if not r.weekly_quota or r.weekly_quota <= 0:
                issues.append(ValidationIssue("credit", key, ERROR, "Credit without weekly quota (H)"))
            if not r.term_weeks or r.term_weeks <= 0:
                issues.append(ValidationIssue("credit", key, ERROR, "Credit without term in weeks (K)"))
            elif term_subject(r.term_weeks) is None and not r.is_coordinator:
                issues.append(ValidationIssue("credit", key, WARNING, f"Term {r.term_weeks} is not a known plan"))
            if not r.disbursement_date:
                issues.append(ValidationIssue("credit", key, WARNING, "Missing disbursement date (P), the run date will be used"))
            if r.folio and folios[norm_key(r.folio)] > 1:
                issues.append(ValidationIssue("credit", key, WARNING, f"Folio {r.folio} repeated in the sheet"))
            if coord and r.client_name and norm_text(r.client_name) != coord:
                if similarity(r.client_name, h.coordinator_name) >= threshold:
                    issues.append(ValidationIssue(
                        "coordinator", key, WARNING,
                        f"{r.client_name!r} looks like coordinator {h.coordinator_name!r} but does not match exactly",
                    ))
    return issues


def has_errors(issues: List[ValidationIssue]) -> bool:
    return any(i.level == ERROR for i in issues)


def issues_frame(issues: List[ValidationIssue]) -> pd.DataFrame:
    if not issues:
        return pd.DataFrame(columns=["entity", "key", "level", "message"])
    df = pd.DataFrame([asdict(i) for i in issues])
    return df.sort_values(["level", "key"], kind="stable").reset_index(drop=True)
