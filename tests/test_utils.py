from __future__ import annotations

from datetime import date, datetime

import pytest

from loanimport.utils import (
    cell_ref_to_rc,
    clean_str,
    col_to_index,
    index_to_col,
    norm_key,
    norm_national_id,
    norm_text,
    parse_day_month_year,
    to_int,
    to_number,
    try_parse_date,
)


def test_clean_str_drops_float_suffix_and_blanks() -> None:
    assert clean_str(5512345678.0) == "5512345678"
    assert clean_str("  Centro  ") == "Centro"
    assert clean_str(float("nan")) is None
    assert clean_str("   ") is None
    assert clean_str(None) is None


def test_norm_text_and_keys() -> None:
    assert norm_text(" María  LÓPEZ ") == "maria lopez"
    assert norm_key("  ruta   uno ") == "RUTA UNO"
    assert norm_key(None) == ""
    assert norm_national_id(" abcd 1234 ") == "ABCD1234"
    assert norm_national_id("0") == ""


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$1,200.50", 1200.5),
        (" 300 ", 300.0),
        (float("inf"), None),
        (float("nan"), None),
        ("abc", None),
        (True, None),
        (None, None),
    ],
)
def test_to_number(raw, expected) -> None:
    assert to_number(raw) == expected


def test_to_int_rounds() -> None:
    assert to_int("14") == 14
    assert to_int(9.6) == 10
    assert to_int("") is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2025-07-16", (16, 7, 2025)),
        ("16/07/2025", (16, 7, 2025)),
        ("16-07-25", (16, 7, 2025)),
        ("16/07", (16, 7, None)),
        ("16 Jul", (16, 7, None)),
        ("16 de julio", (16, 7, None)),
        ("16/jul/2025", (16, 7, 2025)),
        (45854, (16, 7, 2025)),
        (datetime(2025, 7, 16, 10, 30), (16, 7, 2025)),
        (date(1990, 3, 5), (5, 3, 1990)),
        ("31/02/2025", (None, None, None)),
        ("hello", (None, None, None)),
        ("", (None, None, None)),
    ],
)
def test_parse_day_month_year(raw, expected) -> None:
    assert parse_day_month_year(raw) == expected


def test_try_parse_date_uses_default_year() -> None:
    assert try_parse_date("16/07", default_year=2024) == "2024-07-16"
    assert try_parse_date("2025-07-16") == "2025-07-16"
    assert try_parse_date("not a date") is None


def test_column_helpers() -> None:
    assert col_to_index("A") == 0
    assert col_to_index("Q") == 16
    assert index_to_col(26) == "AA"
    assert cell_ref_to_rc("M2") == (1, 12)
    with pytest.raises(ValueError):
        cell_ref_to_rc("2M")
