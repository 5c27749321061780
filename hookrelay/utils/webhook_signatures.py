"""
Webhook signature validation - verify inbound calls are authentic.

Owners configure an HMAC secret, algorithm (sha1/sha256/sha512), header name
and encoding (hex/base64) per webhook. Senders may prefix the value with
"<algorithm>=" (GitHub style), which is stripped before comparing.
"""
import base64
import hashlib
import hmac
import logging
from typing import Optional, Union

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}
SUPPORTED_ENCODINGS = ("hex", "base64")


def _as_bytes(value: Union[str, bytes, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_signature(
    body: Union[str, bytes, None],
    secret: str,
    algorithm: str = "sha256",
    encoding: str = "hex",
) -> str:
    """
    Compute the encoded HMAC of body.
    Raises ValueError on an unsupported algorithm or encoding.
    """
    digestmod = SUPPORTED_ALGORITHMS.get(algorithm)
    if digestmod is None:
        raise ValueError(f"Unsupported signature algorithm: {algorithm}")
    if encoding not in SUPPORTED_ENCODINGS:
        raise ValueError(f"Unsupported signature encoding: {encoding}")

    mac = hmac.new(_as_bytes(secret), _as_bytes(body), digestmod)
    if encoding == "base64":
        return base64.b64encode(mac.digest()).decode("ascii")
    return mac.hexdigest()


def validate_signature(
    body: Union[str, bytes, None],
    provided: Optional[str],
    secret: Optional[str],
    algorithm: str = "sha256",
    encoding: str = "hex",
) -> bool:
    """
    Validate a presented signature against the HMAC of the raw body.
    Returns True if valid, False if invalid, missing, or on any error.
    """
    if not secret or not provided:
        return False

    sig = provided.strip()
    prefix = f"{algorithm}="
    if sig.lower().startswith(prefix):
        sig = sig[len(prefix):]

    try:
        expected = compute_signature(body, secret, algorithm, encoding)
        if encoding == "hex":
            sig = sig.lower()
        return hmac.compare_digest(expected.encode("ascii"), sig.encode("ascii"))
    except Exception as e:
        logger.error("HMAC %s validation error: %s", algorithm, str(e))
        return False


def compute_payload_hash(body: Union[str, bytes, None]) -> str:
    """SHA-256 of the raw payload, for audit."""
    return hashlib.sha256(_as_bytes(body)).hexdigest()
