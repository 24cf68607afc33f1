from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class Phase(str, Enum):
    POPULATIONS = "Populations"
    COORDINATORS = "Coordinators"
    CLIENTS = "Clients"
    GUARANTORS = "Guarantors"
    CREDITS = "Credits"
    PAYMENTS = "Payments"


# execution and rendering order
PHASES = (
    Phase.POPULATIONS,
    Phase.COORDINATORS,
    Phase.CLIENTS,
    Phase.GUARANTORS,
    Phase.CREDITS,
    Phase.PAYMENTS,
)


@dataclass
class StepReport:
    phase: Phase
    total: int = 0
    done: int = 0
    ok: int = 0
    warn: int = 0
    error: int = 0
    processed: int = 0  # units finished either way (progress only)

    def add_ok(self, n: int = 1) -> None:
        self.ok += n
        self.done = self.ok
        self.processed += n

    def add_error(self, units: int = 1, count: int = 1) -> None:
        # units: work items consumed; count: errors recorded
        self.error += count
        self.processed += units

    def add_warning(self) -> None:
        self.warn += 1

    @property
    def complete(self) -> bool:
        return self.processed >= self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "total": self.total,
            "done": self.done,
            "ok": self.ok,
            "warn": self.warn,
            "error": self.error,
        }


@dataclass
class PhaseResult:
    """Outcome of a single-phase run."""
    step: StepReport
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class CommitReport:
    by_phase: Dict[Phase, StepReport] = field(default_factory=dict)
    errors_by_phase: Dict[Phase, List[str]] = field(default_factory=dict)
    warnings_by_phase: Dict[Phase, List[str]] = field(default_factory=dict)

    @classmethod
    def with_totals(cls, totals: Mapping[Phase, int]) -> "CommitReport":
        rep = cls()
        for p in PHASES:
            rep.by_phase[p] = StepReport(phase=p, total=int(totals.get(p, 0)))
            rep.errors_by_phase[p] = []
            rep.warnings_by_phase[p] = []
        return rep

    @property
    def global_ok(self) -> bool:
        return all(s.error == 0 for s in self.by_phase.values())

    def step(self, phase: Phase) -> StepReport:
        return self.by_phase[phase]

    def replace_phase(self, result: PhaseResult) -> None:
        p = result.step.phase
        self.by_phase[p] = result.step
        self.errors_by_phase[p] = list(result.errors)
        self.warnings_by_phase[p] = list(result.warnings)

    def progress_percent(self) -> int:
        total = sum(s.total for s in self.by_phase.values())
        if total <= 0:
            return 100 if all(s.complete for s in self.by_phase.values()) else 0
        processed = sum(min(s.processed, s.total) for s in self.by_phase.values())
        return max(0, min(100, processed * 100 // total))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "global_ok": self.global_ok,
            "by_phase": {p.value: self.by_phase[p].to_dict() for p in PHASES if p in self.by_phase},
            "errors_by_phase": {p.value: list(self.errors_by_phase.get(p, [])) for p in PHASES},
            "warnings_by_phase": {p.value: list(self.warnings_by_phase.get(p, [])) for p in PHASES},
        }

    def render_text(self) -> str:
        """
        Copy-log export:
          GLOBAL_OK: YES|NO
          [Phase] total=T done=D ok=O warn=W error=E
            Warnings:
              - (1) ...
            Errors:
              - (1) ...
        """
        lines = [f"GLOBAL_OK: {'YES' if self.global_ok else 'NO'}"]
        for p in PHASES:
            s = self.by_phase.get(p)
            if s is None:
                continue
            lines.append(f"[{p.value}] total={s.total} done={s.done} ok={s.ok} warn={s.warn} error={s.error}")
            warns = self.warnings_by_phase.get(p) or []
            if warns:
                lines.append("  Warnings:")
                lines.extend(f"    - ({i}) {m}" for i, m in enumerate(warns, 1))
            errs = self.errors_by_phase.get(p) or []
            if errs:
                lines.append("  Errors:")
                lines.extend(f"    - ({i}) {m}" for i, m in enumerate(errs, 1))
        return "\n".join(lines) + "\n"

    def messages(self, phase: Optional[Phase] = None) -> List[Dict[str, str]]:
        # flat (phase, level, message) rows for tables and exports
        out = []
        for p in PHASES if phase is None else (phase,):
            out += [{"phase": p.value, "level": "warning", "message": m} for m in self.warnings_by_phase.get(p, [])]
            out += [{"phase": p.value, "level": "error", "message": m} for m in self.errors_by_phase.get(p, [])]
        return out
