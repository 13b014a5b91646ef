import base64
import hashlib
import string

import pytest

from auth.pkce import compute_challenge, generate_code_verifier, matches


def test_code_verifier_length() -> None:
    verifier = generate_code_verifier()

    assert 43 <= len(verifier) <= 128


def test_code_verifier_url_safe() -> None:
    verifier = generate_code_verifier()
    allowed = set(string.ascii_letters + string.digits + "-_")

    assert all(char in allowed for char in verifier)


def test_code_challenge_is_s256() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

    assert compute_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_plain_challenge_is_verifier() -> None:
    assert compute_challenge("abc", "plain") == "abc"


def test_unknown_method_raises() -> None:
    with pytest.raises(ValueError):
        compute_challenge("abc", "S512")


def test_matches_s256() -> None:
    verifier = generate_code_verifier()

    assert matches(verifier, compute_challenge(verifier), "S256")
    assert not matches("other-verifier", compute_challenge(verifier), "S256")


def test_matches_plain() -> None:
    assert matches("same", "same", "plain")
    assert not matches("same", "different", "plain")


def test_matches_unknown_method_is_false() -> None:
    assert not matches("abc", "abc", "md5")


def test_s256_matches_sha256_of_abc123() -> None:
    expected = base64.urlsafe_b64encode(hashlib.sha256(b"abc123").digest()).decode("ascii").rstrip("=")
    challenge = compute_challenge("abc123", "S256")

    assert challenge == expected
    assert matches("abc123", challenge, "S256")
    assert not matches("wrong", challenge, "S256")
