"""Hash commitments binding a signed message to the exact bytes exchanged.

The inference backend signs ``"{request_hash}:{response_hash}"``. Both hashes
must be computed over the literal bytes sent and received: re-serialized JSON
or a stripped trailing newline yields a different digest and the binding
check fails.
"""

import hashlib
import json
import logging
import re
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")

Body = Union[bytes, bytearray, str, dict, list]


def _to_bytes(body: Any) -> Optional[bytes]:
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, (dict, list)):
        # Same compact form as JSON.stringify; prefer passing the raw body.
        return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode(
            "utf-8"
        )
    return None


def _sha256_hex(body: Any) -> Optional[str]:
    data = _to_bytes(body)
    if data is None:
        logger.warning(f"Cannot hash body of type {type(body).__name__}")
        return None
    return hashlib.sha256(data).hexdigest()


def digest_request(body: Body) -> Optional[str]:
    """SHA-256 hex digest of the request body; None if the input is unusable."""
    return _sha256_hex(body)


def digest_response(body: Body) -> Optional[str]:
    return _sha256_hex(body)


def digest_stream(sse_text: Union[bytes, str]) -> Optional[str]:
    # Do NOT strip: the trailing blank line is part of the signed stream.
    return digest_response(sse_text)


def bind_signature_text(request_hash: str, response_hash: str) -> str:
    return f"{request_hash.lower()}:{response_hash.lower()}"


def verify_binding(
    request_hash: Optional[str],
    response_hash: Optional[str],
    signed_text: Optional[str],
) -> Optional[bool]:
    """Check the signed text against the locally computed hashes.

    Returns True or False for a definite answer and None when the inputs are
    missing or are not hex digests, so callers can tell "indeterminate" apart
    from "mismatch".
    """
    if not isinstance(request_hash, str) or not isinstance(response_hash, str):
        return None
    if not isinstance(signed_text, str) or not signed_text:
        return None
    if not _HEX64.match(request_hash) or not _HEX64.match(response_hash):
        return None
    return bind_signature_text(request_hash, response_hash) == signed_text.lower()
