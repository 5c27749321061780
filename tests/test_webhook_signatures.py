"""
Tests for hookrelay/utils/webhook_signatures.py - HMAC signature compute/validate.
"""
import base64
import hashlib
import hmac

import pytest

from hookrelay.utils.webhook_signatures import (
    compute_payload_hash,
    compute_signature,
    validate_signature,
)

BODY = b'{"event":"push","ref":"refs/heads/main"}'
SECRET = "s3cret"


def _hex(body: bytes, secret: str, digestmod=hashlib.sha256) -> str:
    return hmac.new(secret.encode(), body, digestmod).hexdigest()


# ---------------------------------------------------------------------------
# compute_signature
# ---------------------------------------------------------------------------

class TestComputeSignature:
    def test_sha256_hex(self):
        assert compute_signature(BODY, SECRET) == _hex(BODY, SECRET)

    def test_sha1_and_sha512(self):
        assert compute_signature(BODY, SECRET, "sha1") == _hex(BODY, SECRET, hashlib.sha1)
        assert compute_signature(BODY, SECRET, "sha512") == _hex(BODY, SECRET, hashlib.sha512)

    def test_base64_encoding(self):
        expected = base64.b64encode(hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest()).decode()
        assert compute_signature(BODY, SECRET, "sha256", "base64") == expected

    def test_str_and_bytes_bodies_agree(self):
        assert compute_signature(BODY.decode(), SECRET) == compute_signature(BODY, SECRET)

    def test_unsupported_algorithm_raises(self):
        with pytest.raises(ValueError, match="algorithm"):
            compute_signature(BODY, SECRET, "md5")

    def test_unsupported_encoding_raises(self):
        with pytest.raises(ValueError, match="encoding"):
            compute_signature(BODY, SECRET, "sha256", "base32")


# ---------------------------------------------------------------------------
# validate_signature
# ---------------------------------------------------------------------------

class TestValidateSignature:
    def test_prefixed_signature_validates(self):
        """GitHub-style 'sha256=<hex>' is accepted."""
        provided = f"sha256={_hex(BODY, SECRET)}"
        assert validate_signature(BODY, provided, SECRET) is True

    def test_bare_signature_validates(self):
        assert validate_signature(BODY, _hex(BODY, SECRET), SECRET) is True

    def test_one_flipped_char_invalidates(self):
        sig = _hex(BODY, SECRET)
        flipped = ("0" if sig[0] != "0" else "1") + sig[1:]
        assert validate_signature(BODY, f"sha256={flipped}", SECRET) is False

    def test_uppercase_hex_and_prefix_accepted(self):
        provided = f"SHA256={_hex(BODY, SECRET).upper()}"
        assert validate_signature(BODY, provided, SECRET) is True

    def test_wrong_secret_invalid(self):
        assert validate_signature(BODY, _hex(BODY, "other"), SECRET) is False

    def test_body_tampering_invalid(self):
        assert validate_signature(BODY + b" ", _hex(BODY, SECRET), SECRET) is False

    def test_missing_secret_or_signature_invalid(self):
        assert validate_signature(BODY, _hex(BODY, SECRET), None) is False
        assert validate_signature(BODY, None, SECRET) is False
        assert validate_signature(BODY, "", SECRET) is False

    def test_base64_signature(self):
        sig = compute_signature(BODY, SECRET, "sha512", "base64")
        assert validate_signature(BODY, sig, SECRET, "sha512", "base64") is True
        assert validate_signature(BODY, sig.lower(), SECRET, "sha512", "base64") is False

    def test_unsupported_algorithm_returns_false(self):
        """Configuration errors never raise out of validation."""
        assert validate_signature(BODY, "abc", SECRET, "md5") is False

    def test_non_ascii_signature_returns_false(self):
        assert validate_signature(BODY, "sha256=é" * 3, SECRET) is False


class TestPayloadHash:
    def test_sha256_of_raw_body(self):
        assert compute_payload_hash(BODY) == hashlib.sha256(BODY).hexdigest()

    def test_none_hashes_empty(self):
        assert compute_payload_hash(None) == hashlib.sha256(b"").hexdigest()
