import os
import re
import json
import math
import unicodedata
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional, Tuple
import numpy as np
from dateutil import parser as dtparser
from openpyxl.utils.datetime import from_excel

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"

APPDATA = os.environ.get("APPDATA")
if APPDATA:
    USER_DATA_DIR = Path(APPDATA) / "LoanImport" / "data"
else:
    USER_DATA_DIR = DEFAULT_DATA_DIR  # fallback

def load_json(path: Path, default: Any):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except Exception:
        return default

def save_json(path: Path, obj: Any):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)

_DASH_CHARS_RE = re.compile(r"[\u2010\u2011\u2012\u2013\u2014\u2212]")
_NBSP_RE = re.compile(r"[\u00A0\u2007\u202F]")  # NBSP variants


def strip_accents(s: str) -> str:
    return "".join(ch for ch in unicodedata.normalize("NFKD", s) if not unicodedata.combining(ch))


def clean_str(v: Any) -> Optional[str]:
    """Trimmed string or None. Integral floats lose their '.0' (phones, folios typed as numbers)."""
    if v is None:
        return None
    if isinstance(v, float):
        if math.isnan(v):
            return None
        if v.is_integer():
            v = int(v)
    s = str(v).replace("\ufeff", "")
    s = _NBSP_RE.sub(" ", s).strip()
    if not s or s.lower() == "nan":
        return None
    return s


def norm_text(s: Any) -> str:
    """
    Comparison form of a text:
    - lower
    - accents removed (á -> a, ñ -> n)
    - BOM / non-breaking spaces
    - outer quotes
    - every dash variant -> '-'
    - collapsed whitespace
    """
    if s is None:
        return ""

    s = str(s)

    s = s.replace("\ufeff", "")
    s = _NBSP_RE.sub(" ", s)
    s = s.strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ('"', "'"):
        s = s[1:-1].strip()
    s = strip_accents(s.lower())
    s = _DASH_CHARS_RE.sub("-", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s

def norm_key(s: Any) -> str:
    """
    Natural-key form stored in the database:
    - trimmed, collapsed whitespace
    - uppercase (accents kept)
    - empty string when missing, never None
    """
    t = clean_str(s)
    if not t:
        return ""
    t = _DASH_CHARS_RE.sub("-", t)
    return re.sub(r"\s+", " ", t).strip().upper()

def norm_national_id(s: Any) -> str:
    # INE/CURP style ids: uppercase, no inner spaces
    x = norm_key(s)
    if x in ("", "NAN", "NONE", "0", "-"):
        return ""
    return re.sub(r"\s+", "", x)

# =========================

# Numbers
# =========================
_MONEY_JUNK_RE = re.compile(r"[\s$,]")

def to_number(x: Any) -> Optional[float]:
    # None on empty / text / NaN / inf
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, (int, float, np.integer, np.floating)):
        v = float(x)
        return v if math.isfinite(v) else None
    s = _MONEY_JUNK_RE.sub("", str(x))
    if not s:
        return None
    try:
        v = float(s)
    except ValueError:
        return None
    return v if math.isfinite(v) else None

def to_int(x: Any) -> Optional[int]:
    v = to_number(x)
    if v is None:
        return None
    return int(round(v))

# =========================

# Dates
# =========================
MONTHS_ES = {
    "ene": 1, "enero": 1,
    "feb": 2, "febrero": 2,
    "mar": 3, "marzo": 3,
    "abr": 4, "abril": 4,
    "may": 5, "mayo": 5,
    "jun": 6, "junio": 6,
    "jul": 7, "julio": 7,
    "ago": 8, "agosto": 8,
    "sep": 9, "set": 9, "sept": 9, "septiembre": 9,
    "oct": 10, "octubre": 10,
    "nov": 11, "noviembre": 11,
    "dic": 12, "diciembre": 12,
    # english abbreviations seen in exported sheets
    "jan": 1, "apr": 4, "aug": 8, "dec": 12,
}

# Excel serials between 1900-01-01 and 9999-12-31
_EXCEL_SERIAL_MIN = 1
_EXCEL_SERIAL_MAX = 2958465

_ISO_RE = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:[ t].*)?$")
_DMY_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})$")
_DM_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})$")
_D_MON_RE = re.compile(r"^(\d{1,2})\s*(?:de\s+|[/\-]\s*)?([a-z]{3,10})\.?(?:\s*(?:de\s+|[/\-]\s*)?(\d{2,4}))?$")


def _full_year(y: str) -> int:
    return 2000 + int(y) if len(y) == 2 else int(y)


def _valid_ymd(y: Optional[int], m: Optional[int], d: Optional[int]) -> bool:
    if not m or not d:
        return False
    try:
        date(y or 2000, m, d)  # 2000 is a leap year, so 29/02 without year is accepted
        return True
    except ValueError:
        return False


def parse_day_month_year(v: Any) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    """
    Returns (day, month, year) with year None when the text has none.
    Accepts date/datetime, Excel serials, "YYYY-MM-DD", "DD/MM/YYYY", "DD-MM-YY",
    "DD/MM", "16 Jul", "16 de julio", "16/jul/2025".
    """
    if v is None:
        return None, None, None

    # pandas.Timestamp / datetime.date / datetime.datetime
    if hasattr(v, "year") and hasattr(v, "month") and hasattr(v, "day"):
        try:
            return int(v.day), int(v.month), int(v.year)
        except (TypeError, ValueError):
            return None, None, None

    if isinstance(v, (int, float, np.integer, np.floating)) and not isinstance(v, bool):
        n = float(v)
        if not math.isfinite(n) or not (_EXCEL_SERIAL_MIN <= n <= _EXCEL_SERIAL_MAX):
            return None, None, None
        dt = from_excel(n)
        return dt.day, dt.month, dt.year

    txt = norm_text(v)
    if not txt:
        return None, None, None

    m = _ISO_RE.match(txt)
    if m:
        y, mo, d = int(m.group(1)), int(m.group(2)), int(m.group(3))
        return (d, mo, y) if _valid_ymd(y, mo, d) else (None, None, None)

    m = _DMY_RE.match(txt)
    if m:
        d, mo, y = int(m.group(1)), int(m.group(2)), _full_year(m.group(3))
        return (d, mo, y) if _valid_ymd(y, mo, d) else (None, None, None)

    m = _DM_RE.match(txt)
    if m:
        d, mo = int(m.group(1)), int(m.group(2))
        return (d, mo, None) if _valid_ymd(None, mo, d) else (None, None, None)

    m = _D_MON_RE.match(txt)
    if m:
        d = int(m.group(1))
        mo = MONTHS_ES.get(m.group(2))
        y = _full_year(m.group(3)) if m.group(3) else None
        if mo and _valid_ymd(y, mo, d):
            return d, mo, y
        if mo is not None:
            return None, None, None

    # digits only: not a date unless it came in as a number
    if txt.isdigit():
        return None, None, None

    # free text with an english month ("Jul 16, 2025"); dateutil needs letters and digits
    if re.search(r"\d", txt) and re.search(r"[a-z]", txt):
        try:
            dt = dtparser.parse(txt, dayfirst=True)
            return dt.day, dt.month, dt.year
        except (ValueError, OverflowError):
            return None, None, None

    return None, None, None


def try_parse_date(s: Any, default_year: Optional[int] = None) -> Optional[str]:
    # date of a cell as YYYY-MM-DD; texts without year take default_year (current year by default)
    d, m, y = parse_day_month_year(s)
    if not d or not m:
        return None
    if y is None:
        y = default_year or date.today().year
    try:
        return date(y, m, d).isoformat()
    except ValueError:
        return None

def today_iso() -> str:
    return datetime.now().date().isoformat()

# =========================

# Columns
# =========================
def col_to_index(col: str) -> int:
    # A=0, B=1, ..., Z=25, AA=26
    n = 0
    for ch in (col or "A").strip().upper():
        n = n * 26 + (ord(ch) - 64)
    return n - 1

def index_to_col(idx: int) -> str:
    out = ""
    n = idx + 1
    while n > 0:
        n, r = divmod(n - 1, 26)
        out = chr(65 + r) + out
    return out

def cell_ref_to_rc(ref: str) -> Tuple[int, int]:
    # "M2" -> (1, 12), 0-based
    m = re.match(r"^([A-Za-z]+)(\d+)$", ref.strip())
    if not m:
        raise ValueError(f"Bad cell reference: {ref!r}")
    return int(m.group(2)) - 1, col_to_index(m.group(1))

# =========================

# Locations
# =========================
def rules_path() -> Path:
    return DEFAULT_DATA_DIR / "rules.json"

def sessions_dir() -> Path:
    p = USER_DATA_DIR / "import_sessions"
    p.mkdir(parents=True, exist_ok=True)
    return p

def database_path() -> Path:
    env = os.environ.get("LOANIMPORT_DB_PATH")
    if env:
        return Path(env)
    USER_DATA_DIR.mkdir(parents=True, exist_ok=True)
    return USER_DATA_DIR / "loanimport.db"
