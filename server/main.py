import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from proof_verifier.errors import (
    AttestationTimeoutError,
    BackendAuthError,
    ExpectationsMissingError,
    InvalidPayloadError,
    NoMatchingKeyError,
    PayloadTooLargeError,
    ProofNotReadyError,
    ProofVerificationError,
    SessionNotFoundError,
    TransientError,
    TrustError,
)
from proof_verifier.sdk import ProofVerifier
from proof_verifier.types import AttestationExpectations, ProofBundle, VerificationSession

logger = logging.getLogger(__name__)

verifier = ProofVerifier()


def get_verifier() -> ProofVerifier:
    return verifier


@asynccontextmanager
async def lifespan(app: FastAPI):
    verifier.store.start_sweeper(verifier.settings.sweep_interval_seconds)
    yield
    verifier.store.stop_sweeper()


app = FastAPI(title="Private Inference Proof Verifier API", lifespan=lifespan)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterSessionRequest(_CamelModel):
    verification_id: Optional[str] = Field(None, alias="verificationId")


class SyncSessionRequest(_CamelModel):
    verification_id: Optional[str] = Field(None, alias="verificationId")
    nonce: Optional[str] = None
    request_hash: Optional[str] = Field(None, alias="requestHash")
    response_hash: Optional[str] = Field(None, alias="responseHash")
    attested_nonce: Optional[str] = Field(None, alias="attestedNonce")


class ProofRequest(_CamelModel):
    verification_id: Optional[str] = Field(None, alias="verificationId")
    model: Optional[str] = None
    request_hash: Optional[str] = Field(None, alias="requestHash")
    response_hash: Optional[str] = Field(None, alias="responseHash")


class HardwareTokenRequest(_CamelModel):
    nvidia_payload: Any = None
    nonce: Optional[str] = None
    expected_arch: Optional[str] = Field(None, alias="expectedArch")
    expected_device_cert_hash: Optional[str] = Field(
        None, alias="expectedDeviceCertHash"
    )
    expected_rim_hash: Optional[str] = Field(None, alias="expectedRimHash")
    expected_ueid: Optional[str] = Field(None, alias="expectedUeid")
    expected_measurements: List[str] = Field([], alias="expectedMeasurements")


class StateRequest(_CamelModel):
    proof: ProofBundle
    request_hash: Optional[str] = Field(None, alias="requestHash")
    response_hash: Optional[str] = Field(None, alias="responseHash")


def _session_body(session: VerificationSession) -> Dict[str, Any]:
    return {
        "verificationId": session.verification_id,
        "nonce": session.nonce,
        "requestHash": session.request_hash,
        "responseHash": session.response_hash,
        "expiresAt": session.expires_at,
        "createdAt": session.created_at,
    }


def _http_error(e: Exception) -> HTTPException:
    detail: Dict[str, Any] = {"error": str(e)}

    if isinstance(e, ExpectationsMissingError):
        detail["missing"] = e.missing
    if isinstance(e, InvalidPayloadError) and e.suggestions:
        detail["suggestions"] = e.suggestions
    if isinstance(e, NoMatchingKeyError):
        detail["kid"] = e.kid

    if isinstance(e, PayloadTooLargeError):
        status = 432
    elif isinstance(e, InvalidPayloadError):
        status = 400
    elif isinstance(e, BackendAuthError):
        status = 401
    elif isinstance(e, (SessionNotFoundError, ProofNotReadyError)):
        status = 404
        detail["retryable"] = True
    elif isinstance(e, AttestationTimeoutError):
        status = 504
        detail["retryable"] = True
    elif isinstance(e, TransientError):
        status = 503
        detail["retryable"] = True
    elif isinstance(e, TrustError):
        status = 502
        detail["details"] = type(e).__name__
    else:
        status = 500

    if status >= 500:
        logger.error(f"Verification request failed: {e}")
    return HTTPException(status_code=status, detail=detail)


@app.post("/verification/register-session")
def register_session(
    body: RegisterSessionRequest, verifier: ProofVerifier = Depends(get_verifier)
):
    try:
        session = verifier.register_session(body.verification_id)
    except ProofVerificationError as e:
        raise _http_error(e)
    return {"nonce": session.nonce, "expiresAt": session.expires_at}


@app.post("/verification/session")
def sync_session(
    body: SyncSessionRequest, verifier: ProofVerifier = Depends(get_verifier)
):
    try:
        session = verifier.sync_session(
            body.verification_id,
            request_hash=body.request_hash,
            response_hash=body.response_hash,
            attested_nonce=body.attested_nonce,
            nonce=body.nonce,
        )
    except ProofVerificationError as e:
        raise _http_error(e)
    return _session_body(session)


@app.post("/verification/proof")
async def verify_proof(
    body: ProofRequest, verifier: ProofVerifier = Depends(get_verifier)
):
    """Assemble the proof bundle for a completion.

    Fetch and verification failures answer with a 5xx status, but not only
    500: 502 for an untrusted attestation, 503 when NRAS or the backend is
    unavailable, 504 on timeout. Clients should treat any status >= 500 as a
    failed verification and use ``detail.retryable`` to decide on a retry.
    """
    if not body.verification_id or not body.model:
        raise HTTPException(
            status_code=400, detail={"error": "verificationId and model are required"}
        )
    try:
        bundle = await verifier.verify_proof(
            body.verification_id,
            body.model,
            request_hash=body.request_hash,
            response_hash=body.response_hash,
        )
    except ProofVerificationError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Unexpected error while verifying proof")
        raise HTTPException(status_code=500, detail={"error": str(e)})
    return bundle.model_dump(by_alias=True)


@app.post("/verification/nras")
async def verify_hardware_token(
    body: HardwareTokenRequest, verifier: ProofVerifier = Depends(get_verifier)
):
    if not body.nvidia_payload:
        raise HTTPException(
            status_code=400,
            detail={"error": "nvidia_payload is required in request body"},
        )
    expectations = AttestationExpectations(
        arch=body.expected_arch,
        device_cert_hash=body.expected_device_cert_hash,
        rim_hash=body.expected_rim_hash,
        ueid=body.expected_ueid,
        measurements=body.expected_measurements,
    )
    try:
        result = await verifier.verify_hardware_token(
            body.nvidia_payload, body.nonce, expectations
        )
    except ProofVerificationError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Unexpected error while verifying hardware token")
        raise HTTPException(status_code=500, detail={"error": str(e)})
    return result.model_dump()


@app.post("/verification/state")
def verification_state(
    body: StateRequest, verifier: ProofVerifier = Depends(get_verifier)
):
    state = verifier.evaluate(body.proof, body.request_hash, body.response_hash)
    return state.model_dump(mode="json")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
