"""Unit tests for HMAC webhook signatures."""
import base64
import re

import pytest

from enrollment_webhooks.services import signature

SECRET = "k" * 43
TIMESTAMP = 1_760_000_000
BODY = {"event": "enrollment.created", "data": {"id": "abc", "applicant": "José Núñez"}}


def test_sign_produces_timestamp_and_base64_signature() -> None:
    """Header has the t=<ts>,v1=<base64> shape."""
    header = signature.sign(SECRET, TIMESTAMP, BODY)

    match = re.fullmatch(r"t=(\d+),v1=([A-Za-z0-9+/=]+)", header)
    assert match is not None
    assert int(match.group(1)) == TIMESTAMP
    assert len(base64.b64decode(match.group(2))) == 32


def test_signature_round_trip_verifies() -> None:
    """A payload verifies with the secret that signed it."""
    header = signature.sign(SECRET, TIMESTAMP, BODY)

    assert signature.verify(SECRET, header, BODY) is True


@pytest.mark.parametrize(
    "mutated",
    [
        {"event": "enrollment.created", "data": {"id": "abd", "applicant": "José Núñez"}},
        {"event": "enrollment.updated", "data": {"id": "abc", "applicant": "José Núñez"}},
        {"event": "enrollment.created", "data": {"id": "abc", "applicant": "José Núñez", "extra": 1}},
        {"data": {"id": "abc", "applicant": "José Núñez"}, "event": "enrollment.created"},
    ],
)
def test_any_payload_mutation_fails_verification(mutated: dict) -> None:
    """Changed values, extra keys and reordered keys all break the signature."""
    header = signature.sign(SECRET, TIMESTAMP, BODY)

    assert signature.verify(SECRET, header, mutated) is False


def test_wrong_secret_fails_verification() -> None:
    header = signature.sign(SECRET, TIMESTAMP, BODY)

    assert signature.verify("x" * 43, header, BODY) is False


def test_tampered_timestamp_fails_verification() -> None:
    header = signature.sign(SECRET, TIMESTAMP, BODY)
    tampered = header.replace(f"t={TIMESTAMP}", f"t={TIMESTAMP + 1}")

    assert signature.verify(SECRET, tampered, BODY) is False


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "v1=abc",
        f"t={TIMESTAMP}",
        f"t=not-a-number,v1={base64.b64encode(b'x' * 32).decode()}",
        f"t={TIMESTAMP},v1=***not base64***",
        "garbage",
    ],
)
def test_malformed_headers_fail_closed(header: str | None) -> None:
    """Parse errors never raise; they simply fail verification."""
    assert signature.verify(SECRET, header, BODY) is False


def test_canonical_json_matches_signed_message() -> None:
    """The request body is compact JSON with non-ASCII kept and key order preserved."""
    assert signature.canonical_json({"event": "enrollment.created", "data": {"id": "abc"}}) == (
        '{"event":"enrollment.created","data":{"id":"abc"}}'
    )
    assert signature.canonical_json({"name": "Núñez"}) == '{"name":"Núñez"}'


def test_parse_header_requires_both_parts() -> None:
    with pytest.raises(ValueError):
        signature.parse_header(f"t={TIMESTAMP}")


def test_is_fresh_within_tolerance() -> None:
    header = signature.sign(SECRET, TIMESTAMP, BODY)

    assert signature.is_fresh(header, TIMESTAMP + 300, tolerance_seconds=300) is True
    assert signature.is_fresh(header, TIMESTAMP - 120, tolerance_seconds=300) is True
    assert signature.is_fresh(header, TIMESTAMP + 301, tolerance_seconds=300) is False
    assert signature.is_fresh("garbage", TIMESTAMP, tolerance_seconds=300) is False
