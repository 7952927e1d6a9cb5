"""Helpers for the loosely-typed attestation payloads returned by the backend.

The same concept appears under several historical names (the nonce alone has
three). Every lookup goes through an explicit, ordered alias list and logs
which alias matched, because alias drift on the producer side is the usual
way these payloads break.
"""

import base64
import binascii
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import InvalidPayloadError
from .types import AttestationExpectations, SignaturePayload

logger = logging.getLogger(__name__)

# Compatibility debt: no alias is documented as canonical, so all are kept.
NONCE_CLAIM_ALIASES = ("eat_nonce", "x-nvidia-eat-nonce", "nonce")
PAYLOAD_NONCE_ALIASES = ("nonce", "eat_nonce", "x-nvidia-eat-nonce")
EVIDENCE_LIST_ALIASES = ("evidence_list", "evidenceList", "evidences")
ARCH_ALIASES = ("arch", "gpu_arch")
DEFAULT_GPU_ARCH = "HOPPER"


def first_alias(
    data: Any, aliases: Sequence[str], label: str = "value"
) -> Tuple[Optional[str], Any]:
    """Return ``(alias, value)`` for the first alias with a non-empty value."""
    if not isinstance(data, dict):
        return None, None
    for alias in aliases:
        value = data.get(alias)
        if value not in (None, "", [], {}):
            logger.debug(f"Resolved {label} via '{alias}'")
            return alias, value
    return None, None


def parse_json_safe(value: Any) -> Any:
    if not value:
        return None
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return None


def _gateway(attestation: Dict[str, Any]) -> Dict[str, Any]:
    gateway = attestation.get("gateway_attestation")
    if isinstance(gateway, list):
        gateway = gateway[0] if gateway else None
    return gateway if isinstance(gateway, dict) else {}


def _first_model(attestation: Dict[str, Any]) -> Dict[str, Any]:
    models = attestation.get("model_attestations")
    if isinstance(models, list) and models and isinstance(models[0], dict):
        return models[0]
    return {}


def _evidence_list(payload: Dict[str, Any]) -> Optional[List[Any]]:
    for alias in EVIDENCE_LIST_ALIASES:
        if isinstance(payload.get(alias), list):
            return payload[alias]
    return None


def collect_nvidia_payloads(attestation: Any) -> List[Dict[str, Any]]:
    """All nvidia payloads found in an attestation report, most specific last."""
    candidates: List[Dict[str, Any]] = []
    if not isinstance(attestation, dict):
        return candidates

    def add(value):
        parsed = parse_json_safe(value)
        if isinstance(parsed, dict):
            candidates.append(parsed)

    add(attestation.get("nvidia_payload"))
    add(_gateway(attestation).get("nvidia_payload"))
    for model in attestation.get("model_attestations") or []:
        if isinstance(model, dict):
            add(model.get("nvidia_payload"))

    # The report itself may already be an nvidia payload
    if any(alias in attestation for alias in EVIDENCE_LIST_ALIASES):
        add(attestation)
    return candidates


def find_nvidia_payload(attestation: Any) -> Optional[Dict[str, Any]]:
    for candidate in collect_nvidia_payloads(attestation):
        if _evidence_list(candidate) is not None:
            return candidate
    return None


def build_nras_payload(nvidia_payload: Any) -> Dict[str, Any]:
    """Reduce an nvidia payload to the fields NRAS needs.

    Raises InvalidPayloadError when nonce, arch or the evidence list are
    absent, or when the evidence list holds anything but objects.
    """
    payload = parse_json_safe(nvidia_payload)
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Invalid JSON in nvidia_payload")

    candidate = find_nvidia_payload(payload)
    if candidate is None:
        raise InvalidPayloadError(
            "nvidia_payload missing required fields (nonce, arch, evidence_list)",
            suggestions=[
                "Use model_attestations[0].nvidia_payload for a smaller payload",
                "Ensure attestation payload includes evidence_list",
            ],
        )

    _, nonce = first_alias(candidate, PAYLOAD_NONCE_ALIASES, "payload nonce")
    _, arch = first_alias(candidate, ARCH_ALIASES, "gpu arch")
    evidence_list = _evidence_list(candidate)

    minimal = {
        "nonce": nonce,
        "arch": arch or DEFAULT_GPU_ARCH,
        "evidence_list": evidence_list,
        "device_cert_hash": candidate.get("device_cert_hash"),
        "rim": candidate.get("rim"),
        "ueid": candidate.get("ueid"),
    }

    if not minimal["nonce"] or not isinstance(minimal["evidence_list"], list):
        raise InvalidPayloadError(
            "nvidia_payload missing required fields (nonce, arch, evidence_list)",
            suggestions=[
                "Confirm attestation report includes nonce, arch, and evidence_list",
                "Use model_attestations[0].nvidia_payload to reduce size",
            ],
        )

    if any(not isinstance(item, dict) for item in minimal["evidence_list"]):
        raise InvalidPayloadError(
            "evidence_list contains invalid items",
            suggestions=[
                "Ensure each evidence_list item is an object with evidence/certificate data",
                "Evidence and certificate should be Base64-encoded strings",
            ],
        )

    return {k: v for k, v in minimal.items() if v is not None}


def extract_signing_address(attestation: Any) -> Optional[str]:
    if not isinstance(attestation, dict):
        return None
    for source in (_gateway(attestation), attestation, _first_model(attestation)):
        address = source.get("signing_address")
        if address:
            return address
    return None


def extract_intel_quote(attestation: Any) -> Optional[str]:
    if not isinstance(attestation, dict):
        return None
    for source in (attestation, _gateway(attestation), _first_model(attestation)):
        quote = source.get("intel_quote")
        if quote:
            return quote
    return None


def normalize_signature_payload(sig: Any) -> Optional[SignaturePayload]:
    """Accept the signature as a bare string or wrapped in ``data``/``result``."""
    if not sig:
        return None
    if isinstance(sig, str):
        return SignaturePayload(signature=sig)
    if not isinstance(sig, dict):
        return None

    for candidate in (sig, sig.get("data"), sig.get("result")):
        if isinstance(candidate, dict) and (
            candidate.get("signature")
            or candidate.get("text")
            or candidate.get("signing_address")
        ):
            return SignaturePayload(
                text=candidate.get("text"),
                signature=candidate.get("signature"),
                signing_address=candidate.get("signing_address"),
                signing_algo=candidate.get("signing_algo"),
            )
    logger.warning("Signature payload did not match any known shape")
    return None


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value, validate=True)


def extract_expectations(attestation: Any) -> AttestationExpectations:
    """Derive the expected GPU identity from an attestation report.

    The result may be partial; callers check ``missing_fields()``.
    """
    payload = None
    if isinstance(attestation, dict):
        for candidate in (
            attestation.get("nvidia_payload"),
            _first_model(attestation).get("nvidia_payload"),
            _gateway(attestation).get("nvidia_payload"),
        ):
            if candidate:
                payload = candidate
                break

    if isinstance(payload, str):
        payload = parse_json_safe(payload)
        if payload is None:
            raise InvalidPayloadError("Unable to parse nvidia_payload JSON")
    if not isinstance(payload, dict):
        raise InvalidPayloadError("No NVIDIA payload found in attestation")

    evidence_list = _evidence_list(payload) or []

    device_cert_hash = ""
    rim_hash = ""
    ueid = ""
    measurements: List[str] = []

    for i, item in enumerate(evidence_list):
        if not isinstance(item, dict):
            continue
        if item.get("certificate") and not device_cert_hash:
            try:
                device_cert_hash = hashlib.sha256(
                    _b64decode(item["certificate"])
                ).hexdigest()
            except (binascii.Error, ValueError) as e:
                logger.warning(f"Failed to decode certificate {i}: {e}")
        if item.get("evidence"):
            try:
                evidence_hex = _b64decode(item["evidence"]).hex()
                if evidence_hex:
                    measurements.append(evidence_hex)
            except (binascii.Error, ValueError) as e:
                logger.warning(f"Failed to decode evidence {i}: {e}")
        for m in item.get("measurements") or []:
            value = m.get("hash") if isinstance(m, dict) else m
            if value:
                measurements.append(str(value))
        if not device_cert_hash and item.get("device_cert_hash"):
            device_cert_hash = item["device_cert_hash"]
        if not rim_hash and (item.get("rim") or item.get("rim_hash")):
            rim_hash = item.get("rim") or item.get("rim_hash")
        if not ueid and item.get("ueid"):
            ueid = item["ueid"]

    device_cert_hash = device_cert_hash or payload.get("device_cert_hash") or ""
    rim_hash = rim_hash or payload.get("rim_hash") or payload.get("rim") or ""
    ueid = ueid or payload.get("ueid") or ""

    logger.info(
        "Extracted hardware expectations: "
        f"arch={payload.get('arch') or DEFAULT_GPU_ARCH}, "
        f"device_cert_hash={'yes' if device_cert_hash else 'no'}, "
        f"rim={'yes' if rim_hash else 'no'}, ueid={'yes' if ueid else 'no'}, "
        f"measurements={len(measurements)}"
    )

    return AttestationExpectations(
        arch=payload.get("arch") or payload.get("gpu_arch") or DEFAULT_GPU_ARCH,
        device_cert_hash=device_cert_hash or None,
        rim_hash=rim_hash or None,
        ueid=ueid or None,
        measurements=measurements,
    )
