"""Merchant signature and money parsing tests."""
import hashlib
from decimal import Decimal

import pytest

from seat_redemption.core.signing import (
    build_sign,
    canonicalize,
    format_money,
    parse_money,
    verify_sign,
)


@pytest.mark.unit
def test_canonicalize_sorts_and_skips_signature_and_empty_fields() -> None:
    params = {
        "trade_no": "T1",
        "money": "10.00",
        "sign": "abc",
        "sign_type": "MD5",
        "name": "",
        "device": None,
        "pid": "1001",
    }
    assert canonicalize(params) == "money=10.00&pid=1001&trade_no=T1"


@pytest.mark.unit
def test_build_sign_is_md5_of_canonical_plus_secret() -> None:
    params = {"pid": "1001", "money": "10.00"}
    expected = hashlib.md5("money=10.00&pid=1001secret".encode("utf-8")).hexdigest()
    assert build_sign(params, "secret") == expected


@pytest.mark.unit
def test_verify_sign_ignores_case() -> None:
    params = {"pid": "1001", "out_trade_no": "C1", "money": "5.00"}
    params["sign"] = build_sign(params, "secret").upper()
    assert verify_sign(params, "secret")


@pytest.mark.unit
@pytest.mark.parametrize(
    "mutation",
    [
        {"money": "5.01"},
        {"sign": "0" * 32},
        {"sign": ""},
    ],
)
def test_verify_sign_rejects_tampering(mutation: dict) -> None:
    params = {"pid": "1001", "out_trade_no": "C1", "money": "5.00"}
    params["sign"] = build_sign(params, "secret")
    params.update(mutation)
    assert not verify_sign(params, "secret")


@pytest.mark.unit
def test_verify_sign_requires_secret() -> None:
    params = {"pid": "1001"}
    params["sign"] = build_sign(params, "")
    assert not verify_sign(params, "")


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw,expected",
    [
        ("10", Decimal("10.00")),
        (" 9.5 ", Decimal("9.50")),
        (10.005, Decimal("10.01")),
        ("0", None),
        ("-1", None),
        ("abc", None),
        (None, None),
        (True, None),
        ("NaN", None),
    ],
)
def test_parse_money(raw: object, expected: object) -> None:
    assert parse_money(raw) == expected


@pytest.mark.unit
def test_format_money() -> None:
    assert format_money("3") == "3.00"
    assert format_money("bad") is None
