"""Reduce a proof bundle's sub-checks to per-step results and one verdict.

Everything here is pure: no I/O, no shared state. ``reasons`` preserves step
order and is not deduplicated, because it is shown to users verbatim.
"""

from typing import Any, Callable, Dict, List, Optional

from .attestation import extract_intel_quote, extract_signing_address
from .hashing import verify_binding
from .types import (
    OverallStatus,
    ProofBundle,
    StepStatus,
    VerificationInput,
    VerificationState,
    VerificationStep,
)
from .verifiers.signature import verify_signed_text

STEP_ORDER = ("address", "attestation", "signature", "nonce", "gpu", "cpu")


def _success(message: Optional[str] = None) -> VerificationStep:
    return VerificationStep(status=StepStatus.SUCCESS, message=message)


def _pending(message: Optional[str] = None, required: bool = True) -> VerificationStep:
    return VerificationStep(status=StepStatus.PENDING, message=message, required=required)


def _error(message: str) -> VerificationStep:
    return VerificationStep(status=StepStatus.ERROR, message=message)


def _address_step(data: VerificationInput) -> VerificationStep:
    attested = data.attested_address
    recorded = data.signature_address
    if not attested and not recorded:
        return _error("No TEE addresses available")
    if not attested:
        return _error(f"Signing address {recorded} is not attested by the TEE")
    if recorded and attested.lower() != recorded.lower():
        return _error(
            f"Signing address mismatch: attested {attested}, signed by {recorded}"
        )
    return _success(f"TEE signing address {attested}")


def _verdict_step(
    verified: Optional[bool], reasons: List[str], failure: str, label: str
) -> VerificationStep:
    if verified is None:
        return _pending(f"Awaiting {label}")
    if verified:
        return _success(f"{label.capitalize()} verified")
    return _error("; ".join(reasons) if reasons else failure)


def _signature_step(
    data: VerificationInput, verify_signature: Callable[..., bool]
) -> VerificationStep:
    binding = verify_binding(data.request_hash, data.response_hash, data.signature_text)
    if binding is False:
        return _error("Hash mismatch")
    if not data.signature_text or not data.signature or not data.signature_address:
        return _pending("Awaiting signature")
    if not verify_signature(
        data.signature_text, data.signature, data.signature_address
    ):
        return _error("Invalid signature")
    if binding is None:
        return _pending("Signature valid; request/response hashes unavailable")
    return _success("Signature matches request/response hashes")


def _nonce_step(data: VerificationInput) -> VerificationStep:
    if data.nonce_check is None:
        return _error("missing nonce check")
    if not data.nonce_check.valid:
        return _error("Nonce mismatch")
    return _success("Nonce bound to this request")


def derive_state(
    data: VerificationInput,
    verify_signature: Callable[..., bool] = verify_signed_text,
) -> VerificationState:
    steps: Dict[str, VerificationStep] = {
        "address": _address_step(data),
        "attestation": _verdict_step(
            data.hardware_verified,
            data.hardware_reasons,
            "Hardware attestation failed",
            "hardware attestation",
        ),
        "signature": _signature_step(data, verify_signature),
        "nonce": _nonce_step(data),
        "gpu": _verdict_step(
            data.hardware_verified, [], "GPU attestation failed", "GPU attestation"
        ),
    }
    if data.cpu_required:
        steps["cpu"] = _verdict_step(
            data.cpu_verified,
            data.cpu_reasons,
            "CPU attestation failed",
            "CPU attestation",
        )
    else:
        steps["cpu"] = _pending("CPU attestation not required", required=False)

    reasons: List[str] = []
    for name in STEP_ORDER:
        step = steps[name]
        if step.status != StepStatus.ERROR:
            continue
        if name == "attestation" and data.hardware_reasons:
            reasons.extend(data.hardware_reasons)
        elif name == "cpu" and data.cpu_reasons:
            reasons.extend(data.cpu_reasons)
        else:
            reasons.append(step.message)

    applicable = [s for s in steps.values() if s.required]
    if any(s.status == StepStatus.ERROR for s in applicable):
        overall = OverallStatus.FAILED
    elif all(s.status == StepStatus.SUCCESS for s in applicable):
        overall = OverallStatus.VERIFIED
    else:
        overall = OverallStatus.PENDING

    return VerificationState(steps=steps, overall=overall, reasons=reasons)


def input_from_bundle(
    bundle: ProofBundle,
    request_hash: Optional[str],
    response_hash: Optional[str],
    cpu_required: Any = "auto",
) -> VerificationInput:
    """Flatten a ProofBundle into the inputs ``derive_state`` needs.

    ``cpu_required`` may be True, False, or "auto" (required iff the
    attestation carries an Intel quote).
    """
    signature = bundle.signature
    if cpu_required == "auto":
        cpu_required = bool(extract_intel_quote(bundle.attestation))

    return VerificationInput(
        request_hash=request_hash,
        response_hash=response_hash,
        signature_text=signature.text if signature else None,
        signature=signature.signature if signature else None,
        signature_address=signature.signing_address if signature else None,
        attested_address=extract_signing_address(bundle.attestation),
        hardware_verified=bundle.hardware_token.verified
        if bundle.hardware_token
        else None,
        hardware_reasons=bundle.hardware_token.reasons if bundle.hardware_token else [],
        cpu_verified=bundle.cpu.verified if bundle.cpu else None,
        cpu_reasons=bundle.cpu.reasons if bundle.cpu else [],
        nonce_check=bundle.nonce_check,
        cpu_required=bool(cpu_required),
    )
