import datetime as dt
import pathlib
import re

import pytest

from app import common


def test_every_helper_is_used_by_the_application():
    root = pathlib.Path(common.__file__).resolve().parent
    sources = "\n".join(p.read_text(encoding="utf-8") for p in root.glob("*.py") if p.name != "common.py")
    public = [name for name, value in vars(common).items() if callable(value) and getattr(value, "__module__", "") == common.__name__]
    assert public
    unused = [name for name in public if not re.search(rf"\b{name}\b", sources)]
    assert unused == []


@pytest.mark.parametrize(
    "raw, expected",
    [("2026-03-05", "2026-03-05"), ("03/05/2026", "2026-03-05"), ("2026/03/05", "2026-03-05"), ("5 March", None), ("", None)],
)
def test_parse_date_formats(raw, expected):
    assert common.parse_date(raw) == expected


def test_parse_datetime_assumes_utc():
    assert common.parse_datetime("2026-03-05 14:30") == "2026-03-05T14:30:00+00:00"
    assert common.parse_datetime("03/05/2026 2:30 PM") == "2026-03-05T14:30:00+00:00"
    assert common.parse_datetime("later") is None


def test_parse_rfc3339_datetime_normalises_to_utc():
    parsed = common.parse_rfc3339_datetime("2026-03-05T16:30:00+02:00")
    assert parsed == dt.datetime(2026, 3, 5, 14, 30, tzinfo=dt.timezone.utc)
    assert common.parse_rfc3339_datetime("2026-03-05T14:30:00Z").tzinfo == dt.timezone.utc
    assert common.parse_rfc3339_datetime("nope") is None


def test_int_parsing_and_clamping():
    assert common.to_int(" 12 ") == 12
    assert common.to_int("1.5", default=3) == 3
    assert common.to_int(None) is None
    assert common.clamp_int("900", 50, 1, 500) == 500
    assert common.clamp_int("x", 50, 1, 500) == 50
    assert common.clamp_int("-4", 50, 1, 500) == 1


def test_password_hash_round_trip():
    digest, salt = common.hash_password("correct horse battery")
    assert common.verify_password("correct horse battery", digest, salt)
    assert not common.verify_password("wrong horse", digest, salt)
    assert common.token_hash("abc") == common.token_hash("abc") != common.token_hash("abd")


def test_slugify_and_escape():
    assert common.slugify("  Acme Relief & Co. ") == "acme-relief-co"
    assert common.slugify("!!!") == "workspace"
    assert common.h('<a href="x">') == "&lt;a href=&quot;x&quot;&gt;"
    assert common.h(None) == ""
    assert common.parse_iso_date("2026-03-05T10:00:00") == dt.date(2026, 3, 5)
