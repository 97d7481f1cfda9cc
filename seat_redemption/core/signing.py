"""
Merchant signature scheme shared by both payment gateways.

Parameters are canonicalized (non-empty values, signature fields excluded,
ASCII-sorted keys, ``key=value`` joined with ``&``), the shared secret is
appended, and the result is hashed with MD5.
"""
import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional

SIGNATURE_FIELDS = frozenset({"sign", "sign_type"})

_CENT = Decimal("0.01")


def canonicalize(params: Mapping[str, Any]) -> str:
    """Build the canonical string that gets signed."""
    pairs = []
    for key in sorted(params):
        if key in SIGNATURE_FIELDS:
            continue
        value = params[key]
        if value is None:
            continue
        text = str(value).strip()
        if not text:
            continue
        pairs.append(f"{key}={text}")
    return "&".join(pairs)


def build_sign(params: Mapping[str, Any], secret: str) -> str:
    """Return the lowercase hex MD5 signature for ``params``."""
    payload = canonicalize(params) + secret
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def verify_sign(params: Mapping[str, Any], secret: str) -> bool:
    """Compare the supplied ``sign`` against the expected one, ignoring case."""
    supplied = str(params.get("sign") or "").strip().lower()
    if not supplied or not secret:
        return False
    expected = build_sign(params, secret)
    return hmac.compare_digest(supplied, expected)


def parse_money(value: Any) -> Optional[Decimal]:
    """
    Parse an amount into a two-decimal ``Decimal``.

    Returns None for anything that is not a positive finite number.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def format_money(value: Any) -> Optional[str]:
    """Render an amount as the gateway does (``"10.00"``), or None if invalid."""
    amount = parse_money(value)
    return f"{amount:.2f}" if amount is not None else None
