import logging
from typing import Any, Dict, Optional

import dcap_qvl

from ..types import CpuAttestationResult
from .base import Verifier

logger = logging.getLogger(__name__)

ACCEPTED_TCB_STATUSES = (
    "UpToDate",
    "SWHardeningNeeded",
    "ConfigurationNeeded",
    "ConfigurationAndSWHardeningNeeded",
)

# TDX v4 quote: 48-byte header, then the TD report body
QUOTE_HEADER_LEN = 48
TD_REPORT_BODY_LEN = 584
REPORT_DATA_OFFSET = 520


def extract_report_data(quote_bytes: bytes) -> Optional[bytes]:
    body = quote_bytes[QUOTE_HEADER_LEN : QUOTE_HEADER_LEN + TD_REPORT_BODY_LEN]
    if len(body) < TD_REPORT_BODY_LEN:
        return None
    return body[REPORT_DATA_OFFSET:TD_REPORT_BODY_LEN]


def verify_report_data(
    report_data_hex: str, signing_address: str, request_nonce: str
) -> Dict[str, Any]:
    """
    Check that TDX report data binds the signing address and request nonce.
    Report Data (64 bytes) = [Signing Address (20 bytes + 12 bytes padding)] + [Nonce (32 bytes)]
    """
    try:
        report_data = bytes.fromhex(report_data_hex)
        if len(report_data) != 64:
            return {
                "valid": False,
                "error": f"Invalid report_data length: {len(report_data)}",
            }

        embedded_address_bytes = report_data[:32]
        embedded_nonce_bytes = report_data[32:]

        if signing_address.startswith("0x"):
            signing_address = signing_address[2:]
        expected_address_bytes = bytes.fromhex(signing_address).ljust(32, b"\x00")
        address_match = embedded_address_bytes == expected_address_bytes

        nonce_match = embedded_nonce_bytes == bytes.fromhex(request_nonce)

        return {
            "valid": address_match and nonce_match,
            "address_match": address_match,
            "nonce_match": nonce_match,
            "attested_nonce": embedded_nonce_bytes.hex(),
        }
    except ValueError as e:
        return {"valid": False, "error": str(e)}


def _quote_bytes(quote: Any) -> bytes:
    if isinstance(quote, bytes):
        return quote
    if isinstance(quote, str):
        return bytes.fromhex(quote[2:] if quote.startswith("0x") else quote)
    raise ValueError("Quote must be hex string or bytes")


class IntelTdxVerifier(Verifier):
    """CPU-side attestation: DCAP quote verification plus report-data binding."""

    async def verify(
        self,
        quote: Any,
        signing_address: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> CpuAttestationResult:
        try:
            quote_bytes = _quote_bytes(quote)
        except ValueError as e:
            return CpuAttestationResult(
                verified=False, reasons=[f"Malformed Intel quote: {e}"]
            )

        reasons = []
        claims: Dict[str, Any] = {}
        status = None

        try:
            result = await dcap_qvl.get_collateral_and_verify(quote_bytes)
            status = result.status
            claims["status"] = status
            claims["advisory_ids"] = getattr(result, "advisory_ids", [])
            if status not in ACCEPTED_TCB_STATUSES:
                reasons.append(f"Intel quote verification failed with status: {status}")
        except Exception as e:
            logger.warning(f"Intel quote verification failed: {e}")
            reasons.append(f"Intel quote verification failed: {e}")

        report_data = extract_report_data(quote_bytes)
        report_data_hex = report_data.hex() if report_data else None
        attested_nonce = report_data[32:].hex() if report_data else None

        if report_data_hex is None:
            reasons.append("Intel quote too short to carry report data")
        elif signing_address and nonce:
            rd_check = verify_report_data(report_data_hex, signing_address, nonce)
            claims["report_data_check"] = rd_check
            if not rd_check["valid"]:
                reasons.append(
                    f"Report data binding failed: {rd_check.get('error') or 'Address/Nonce mismatch'}"
                )
        else:
            reasons.append("Signing address and nonce are required for report data binding")

        return CpuAttestationResult(
            verified=not reasons,
            status=status,
            report_data=report_data_hex,
            attested_nonce=attested_nonce,
            claims=claims,
            reasons=reasons,
        )
