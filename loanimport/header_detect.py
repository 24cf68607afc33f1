from __future__ import annotations
import re
from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from .contract import RawSheet, SheetHeader
from .utils import clean_str, cell_ref_to_rc, parse_day_month_year, to_int

# =========================

# Layouts: fixed anchor cells, no format marker in the file
# =========================
@dataclass(frozen=True)
class HeaderLayout:
    name: str
    cells: Dict[str, str]          # field -> cell reference
    anchors: Tuple[str, ...]       # fields that identify the layout when populated


# Original layout:
#   A1 population no. | B1 population | D1 birthday | I1 phone | P1 state
#   B2 coordinator    | I2 address    | M2 route    | O2 frequency
LAYOUT_A = HeaderLayout(
    name="A",
    cells={
        "population_number": "A1",
        "population_name": "B1",
        "birthday": "D1",
        "coordinator_phone": "I1",
        "state": "P1",
        "coordinator_name": "B2",
        "coordinator_address": "I2",
        "route_name": "M2",
        "frequency": "O2",
    },
    anchors=("route_name", "population_name"),
)

# Alternate layout:
#   A1 population no. | B1 population | O1 route    | P1 state
#   B2 coordinator    | D2 address    | F2 phone    | H2 birthday | O2 frequency
LAYOUT_B = HeaderLayout(
    name="B",
    cells={
        "population_number": "A1",
        "population_name": "B1",
        "route_name": "O1",
        "state": "P1",
        "coordinator_name": "B2",
        "coordinator_address": "D2",
        "coordinator_phone": "F2",
        "birthday": "H2",
        "frequency": "O2",
    },
    anchors=("route_name", "population_name"),
)

LAYOUTS = (LAYOUT_A, LAYOUT_B)

# label prefixes typed into header cells ("COORD: ANA", "Ruta: 5")
_LABELS = {
    "population_name": r"poblaci[oó]n",
    "municipality": r"municipio",
    "state": r"estado",
    "route_name": r"ruta",
    "frequency": r"frecuencia(?:\s+de\s+pago|\s+d[ií]as)?",
    "coordinator_name": r"coordinador(?:a|\(a\))?|coord|cord|coor",
    "coordinator_phone": r"tel[eé]fono|tel",
    "coordinator_address": r"domicilio|direcci[oó]n",
}
# the coordinator cell is often "Coordinadora Ana" with no separator
_SPACE_SEPARATED = {"coordinator_name"}

_SEP = r"\s*[:\-–—]\s*"


def _prefix_re(field: str, label: str):
    sep = _SEP + r"|\s+" if field in _SPACE_SEPARATED else _SEP
    return re.compile(r"^\s*(?:" + label + r")\.?(?:" + sep + r")(?P<rest>.+)$", re.I)


_PREFIX_RE = {k: _prefix_re(k, v) for k, v in _LABELS.items()}
_BARE_LABEL_RE = {k: re.compile(r"^\s*(?:" + v + r")\.?\s*[:\-–—]?\s*$", re.I) for k, v in _LABELS.items()}

# accepted spellings of each header field (UI patches, older session files)
FIELD_ALIASES = {
    "population_number": ("population_number", "populationNumber", "poblacionNumero", "poblacion_numero"),
    "population_name": ("population_name", "populationName", "poblacionNombre", "poblacion_nombre", "poblacion"),
    "municipality": ("municipality", "poblacionMunicipio", "poblacion_municipio", "municipio"),
    "state": ("state", "estadoMx", "poblacion_estado", "estado"),
    "route_name": ("route_name", "routeName", "rutaNombre", "ruta_nombre", "ruta"),
    "frequency": ("frequency", "frecuencia", "frecuencia_dias", "frecuencia_pago"),
    "coordinator_name": ("coordinator_name", "coordinatorName", "coordinadoraNombre", "coordinadora_nombre", "coordinadora"),
    "coordinator_phone": ("coordinator_phone", "coordTelefono", "coordinadora_tel", "telefono"),
    "coordinator_address": ("coordinator_address", "coordinadoraDomicilio", "coordinadora_domicilio", "domicilio"),
    "birth_day": ("birth_day", "dia", "cumple_dia"),
    "birth_month": ("birth_month", "mes", "cumple_mes"),
    "coordinator_birthdate": ("coordinator_birthdate", "cumpleISO", "coordinadora_cumple", "birthday", "cumple"),
    "is_coordinator_sheet": ("is_coordinator_sheet", "esCoordinadoraHoja", "es_coordinadora_hoja"),
}

TEXT_FIELDS = (
    "population_number",
    "population_name",
    "municipality",
    "state",
    "route_name",
    "frequency",
    "coordinator_name",
    "coordinator_phone",
    "coordinator_address",
)


def strip_label_prefix(value: Any, field: str) -> Optional[str]:
    """
    Removes a typed label ("COORD:", "Coordinadora", "Ruta -") from a header value.
    Repeats until nothing changes so that the result is a fixed point.
    """
    s = clean_str(value)
    rx = _PREFIX_RE.get(field)
    if s is None or rx is None:
        return s
    while True:
        if _BARE_LABEL_RE[field].match(s):
            return None
        m = rx.match(s)
        if not m:
            return s
        nxt = clean_str(m.group("rest"))
        if nxt is None or nxt == s:
            return nxt
        s = nxt


def _pick(raw: Mapping[str, Any], field: str) -> Any:
    for k in FIELD_ALIASES[field]:
        v = raw.get(k)
        if v is not None and str(v).strip() != "":
            return v
    return None


def _valid_day_month(d: Optional[int], m: Optional[int]) -> bool:
    return bool(d and m and 1 <= m <= 12 and 1 <= d <= 31)


def _birthdate(raw: Mapping[str, Any], today: Optional[date] = None) -> Tuple[Optional[int], Optional[int], Optional[str]]:
    # explicit day/month win over the stored date; the year comes from the stored date or the current year
    pd_, pm, py = parse_day_month_year(_pick(raw, "coordinator_birthdate"))
    day = to_int(_pick(raw, "birth_day"))
    month = to_int(_pick(raw, "birth_month"))
    day = day if day else pd_
    month = month if month else pm
    if not _valid_day_month(day, month):
        return day, month, None
    year = py or (today or date.today()).year
    try:
        return day, month, date(year, month, day).isoformat()
    except ValueError:
        return day, month, None


def normalize_header(raw: Union[SheetHeader, Mapping[str, Any], None], today: Optional[date] = None) -> SheetHeader:
    """
    Canonical SheetHeader from any header-like mapping.

    Idempotent: normalize_header(normalize_header(h)) == normalize_header(h).
    The import UI calls it again after each operator edit.
    """
    if raw is None:
        raw = {}
    elif isinstance(raw, SheetHeader):
        raw = asdict(raw)

    out: Dict[str, Any] = {}
    for f in TEXT_FIELDS:
        out[f] = strip_label_prefix(_pick(raw, f), f)

    day, month, iso = _birthdate(raw, today)
    out["birth_day"] = day
    out["birth_month"] = month
    out["coordinator_birthdate"] = iso
    out["is_coordinator_sheet"] = bool(_pick(raw, "is_coordinator_sheet"))
    return SheetHeader(**out)


def patch_header(header: SheetHeader, patch: Mapping[str, Any], today: Optional[date] = None) -> SheetHeader:
    merged = dict(asdict(header))
    merged.update(patch)
    if ("birth_day" in patch or "birth_month" in patch) and "coordinator_birthdate" not in patch:
        # edited day/month cells replace the stored date; only its year is kept
        year = parse_day_month_year(header.coordinator_birthdate)[2]
        merged["coordinator_birthdate"] = None
        if year:
            today = date(year, 1, 1)
    return normalize_header(merged, today)

# =========================

# Layout selection
# =========================
def _layout_value(sheet: RawSheet, layout: HeaderLayout, field: str) -> Any:
    ref = layout.cells.get(field)
    if not ref:
        return None
    r, c = cell_ref_to_rc(ref)
    return sheet.cell(r, c)


def _filled_anchors(sheet: RawSheet, layout: HeaderLayout) -> int:
    return sum(1 for f in layout.anchors if clean_str(_layout_value(sheet, layout, f)))


def select_layout(sheet: RawSheet, layouts: Tuple[HeaderLayout, ...] = LAYOUTS) -> HeaderLayout:
    """
    Tries the primary layout first; when its anchors are not all populated,
    an alternate layout with more populated anchors takes over.
    """
    primary = layouts[0]
    if _filled_anchors(sheet, primary) == len(primary.anchors):
        return primary
    best, best_n = primary, _filled_anchors(sheet, primary)
    for alt in layouts[1:]:
        n = _filled_anchors(sheet, alt)
        if n > best_n:
            best, best_n = alt, n
    return best


def read_sheet_header(sheet: RawSheet, layout: Optional[HeaderLayout] = None, today: Optional[date] = None) -> SheetHeader:
    layout = layout or select_layout(sheet)
    raw = {f: _layout_value(sheet, layout, f) for f in layout.cells}
    return normalize_header(raw, today)
