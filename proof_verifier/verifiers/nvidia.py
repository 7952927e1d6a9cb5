import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import requests

from ..attestation import build_nras_payload, parse_json_safe
from ..config import NRAS_TIMEOUT_SECONDS, NRAS_URL
from ..errors import (
    AttestationTimeoutError,
    AttestationUnavailableError,
    ExpectationsMissingError,
    NrasResponseError,
    PayloadTooLargeError,
)
from ..types import AttestationExpectations, HardwareTokenResult
from .base import Verifier
from .token import AttestationTokenVerifier

logger = logging.getLogger(__name__)


def _truncate(meta: Dict[str, Any], limit: int = 200) -> Dict[str, Any]:
    return {
        k: (f"{v[:limit]}..." if isinstance(v, str) and len(v) > limit else v)
        for k, v in meta.items()
    }


def parse_nras_response(parsed: Any) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Extract the platform JWT and per-GPU tokens from an NRAS response.

    NRAS has answered both ``[["JWT", token], {"GPU-0": token}]`` and
    ``{"jwt": token, "gpus": {...}}``; neither is documented as canonical.
    """
    token = None
    gpus = None
    if isinstance(parsed, list):
        for item in parsed:
            if isinstance(item, list) and len(item) > 1 and item[0] == "JWT":
                token = token or item[1]
            elif isinstance(item, dict) and gpus is None:
                gpus = item
        logger.debug("NRAS response parsed as array of tuples")
    elif isinstance(parsed, dict) and parsed.get("jwt"):
        token = parsed["jwt"]
        gpus = parsed.get("gpus")
        logger.debug("NRAS response parsed as object")
    else:
        logger.warning(f"Unrecognized NRAS response shape: {type(parsed).__name__}")

    if not isinstance(token, str) or not token:
        raise NrasResponseError("NRAS response missing JWT")
    return token, gpus


class NvidiaGpuVerifier(Verifier):
    def __init__(
        self,
        token_verifier: Optional[AttestationTokenVerifier] = None,
        session: Optional[Any] = None,
        nras_url: str = NRAS_URL,
        timeout: float = NRAS_TIMEOUT_SECONDS,
    ):
        self.token_verifier = token_verifier or AttestationTokenVerifier()
        self.session = session or requests.Session()
        self.nras_url = nras_url
        self.timeout = timeout

    def _attest(self, minimal_payload: Dict[str, Any]) -> Any:
        meta = _truncate(
            {
                "nonce": str(minimal_payload.get("nonce")),
                "arch": minimal_payload.get("arch"),
                "evidence_count": len(minimal_payload.get("evidence_list", [])),
            }
        )
        logger.info(f"Sending evidence to NRAS: {meta}")
        try:
            response = self.session.post(
                self.nras_url,
                json=minimal_payload,
                headers={
                    "accept": "application/json",
                    "content-type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise AttestationTimeoutError("NRAS request timed out") from e
        except requests.RequestException as e:
            raise AttestationUnavailableError(f"Failed to reach NRAS: {e}") from e

        text = response.text or ""
        if response.status_code == 432 or "Request Header Or Cookie Too Large" in text:
            logger.warning(f"NRAS payload too large: {_truncate({'body': text})}")
            raise PayloadTooLargeError(
                "NRAS payload too large",
                suggestions=[
                    "Use model_attestations[0].nvidia_payload instead of gateway payload",
                    "Remove unnecessary fields from payload",
                ],
            )
        if response.status_code >= 500:
            raise AttestationUnavailableError(
                f"NRAS responded with status {response.status_code}"
            )
        if response.status_code != 200:
            raise NrasResponseError(
                f"NRAS request failed with status {response.status_code}: {text[:200]}"
            )

        parsed = parse_json_safe(text)
        return parsed if parsed is not None else text

    async def verify(
        self,
        payload: Any,
        nonce: Optional[str] = None,
        expectations: Optional[AttestationExpectations] = None,
    ) -> HardwareTokenResult:
        expectations = expectations or AttestationExpectations()
        # Reject before any network call
        missing = expectations.missing_fields()
        if missing:
            raise ExpectationsMissingError(missing)

        minimal_payload = build_nras_payload(payload)
        # Blocking HTTP (NRAS, JWKS) runs off the event loop
        parsed = await asyncio.to_thread(self._attest, minimal_payload)
        token, gpus = parse_nras_response(parsed)

        return await asyncio.to_thread(
            self.token_verifier.verify,
            token,
            nonce,
            expectations,
            gpu_tokens=gpus,
            evidence=minimal_payload,
        )
