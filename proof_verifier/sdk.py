import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Union

import requests

from .attestation import (
    NONCE_CLAIM_ALIASES,
    extract_expectations,
    extract_intel_quote,
    extract_signing_address,
    find_nvidia_payload,
    first_alias,
)
from .config import BACKEND_TIMEOUT_SECONDS, Settings, load_settings
from .errors import (
    BackendAuthError,
    BackendError,
    InvalidPayloadError,
    ProofNotReadyError,
    SessionNotFoundError,
)
from .hashing import verify_binding
from .jwks import JwksCache
from .providers import InferenceBackend, NearaiProvider
from .retry import RetryPolicy, retry_async
from .sessions import VerificationSessionStore
from .state import derive_state, input_from_bundle
from .types import (
    AttestationExpectations,
    CpuAttestationResult,
    HardwareTokenResult,
    NonceCheck,
    ProofBundle,
    VerificationSession,
    VerificationState,
)
from .verifiers import AttestationTokenVerifier, IntelTdxVerifier, NvidiaGpuVerifier

logger = logging.getLogger(__name__)


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def build_nonce_check(
    expected: Optional[str],
    hardware_token: Optional[HardwareTokenResult],
    cpu: Optional[CpuAttestationResult],
) -> NonceCheck:
    """Compare the session nonce with what the TEE and NRAS actually attested."""
    nras_nonce = None
    if hardware_token is not None:
        _, value = first_alias(hardware_token.claims, NONCE_CLAIM_ALIASES, "NRAS nonce")
        nras_nonce = str(value) if value is not None else None

    attested = cpu.attested_nonce if cpu and cpu.attested_nonce else nras_nonce
    valid = _same(expected, attested)
    if nras_nonce is not None:
        valid = valid and _same(expected, nras_nonce)

    return NonceCheck(expected=expected, attested=attested, nras=nras_nonce, valid=valid)


class ProofVerifier:
    """
    Server-side core: owns the session store and the verifiers, and assembles
    a ProofBundle for a completion. Every collaborator can be injected.
    """

    def __init__(
        self,
        store: Optional[VerificationSessionStore] = None,
        token_verifier: Optional[AttestationTokenVerifier] = None,
        nvidia_verifier: Optional[NvidiaGpuVerifier] = None,
        intel_verifier: Optional[IntelTdxVerifier] = None,
        backend: Optional[InferenceBackend] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or load_settings()
        self.store = store or VerificationSessionStore()
        self.token_verifier = token_verifier or AttestationTokenVerifier(
            jwks_cache=JwksCache()
        )
        self.nvidia_verifier = nvidia_verifier or NvidiaGpuVerifier(
            token_verifier=self.token_verifier
        )
        self.intel_verifier = intel_verifier or IntelTdxVerifier()
        self.backend = backend or NearaiProvider(
            api_base=self.settings.api_base,
            signing_algo=self.settings.signing_algo,
        )

    # -- sessions --

    def register_session(self, verification_id: str) -> VerificationSession:
        if not verification_id:
            raise InvalidPayloadError("verificationId is required")
        return self.store.register(verification_id)

    def sync_session(
        self,
        verification_id: str,
        request_hash: Optional[str] = None,
        response_hash: Optional[str] = None,
        attested_nonce: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> VerificationSession:
        """Get-or-register, then adopt an authoritative nonce if one differs."""
        if not verification_id:
            raise InvalidPayloadError("verificationId is required")

        session = self.store.get(verification_id)
        if session is None:
            session = self.store.register(
                verification_id,
                nonce=nonce or attested_nonce,
                request_hash=request_hash,
                response_hash=response_hash,
            )
        else:
            session = self.store.update_hashes(
                verification_id, request_hash, response_hash
            ) or session

        if attested_nonce and attested_nonce.lower() != session.nonce.lower():
            logger.info(f"Adopting attested nonce for session {verification_id}")
            session = self.store.resync(
                verification_id,
                attested_nonce,
                request_hash=request_hash,
                response_hash=response_hash,
            )
        return session

    # -- verification --

    async def verify_hardware_token(
        self,
        payload: Any,
        nonce: Optional[str],
        expectations: Union[AttestationExpectations, Dict[str, Any], None],
    ) -> HardwareTokenResult:
        if isinstance(expectations, dict):
            expectations = AttestationExpectations(**expectations)
        return await self.nvidia_verifier.verify(payload, nonce, expectations)

    def _cpu_required(self, attestation: Dict[str, Any]) -> bool:
        required = self.settings.cpu_attestation_required
        if required == "auto":
            return bool(extract_intel_quote(attestation))
        return bool(required)

    async def _verify_cpu(
        self, attestation: Dict[str, Any], signing_address: Optional[str], nonce: str
    ) -> Optional[CpuAttestationResult]:
        quote = extract_intel_quote(attestation)
        if not quote:
            if self._cpu_required(attestation):
                return CpuAttestationResult(
                    verified=False, reasons=["Intel quote missing from attestation"]
                )
            return None
        return await self.intel_verifier.verify(
            quote, signing_address=signing_address, nonce=nonce
        )

    async def verify_proof(
        self,
        verification_id: str,
        model: str,
        request_hash: Optional[str] = None,
        response_hash: Optional[str] = None,
    ) -> ProofBundle:
        session = self.store.get(verification_id)
        if session is None:
            raise SessionNotFoundError(verification_id)
        session = (
            self.store.update_hashes(verification_id, request_hash, response_hash)
            or session
        )

        signature = await asyncio.to_thread(
            self.backend.fetch_signature, verification_id, model
        )
        attestation = await asyncio.to_thread(
            self.backend.fetch_attestation_report,
            model,
            session.nonce,
            signing_address=signature.signing_address,
        )

        if (
            session.request_hash
            and session.response_hash
            and verify_binding(
                session.request_hash, session.response_hash, signature.text
            )
            is False
        ):
            # The TEE-signed text is authoritative over locally recorded hashes
            logger.warning(
                f"Recorded hashes for {verification_id} differ from the signed text; "
                "using the signed text"
            )

        nvidia_payload = find_nvidia_payload(attestation)
        hardware_token = None
        if nvidia_payload is not None:
            expectations = extract_expectations(attestation)
            hardware_token = await self.nvidia_verifier.verify(
                nvidia_payload, session.nonce, expectations
            )
        else:
            logger.warning(f"No NVIDIA payload in attestation for {verification_id}")

        signing_address = extract_signing_address(attestation) or signature.signing_address
        cpu = await self._verify_cpu(attestation, signing_address, session.nonce)

        return ProofBundle(
            signature=signature,
            attestation=attestation,
            hardware_token=hardware_token,
            cpu=cpu,
            nonce_check=build_nonce_check(session.nonce, hardware_token, cpu),
        )

    def evaluate(
        self,
        bundle: ProofBundle,
        request_hash: Optional[str] = None,
        response_hash: Optional[str] = None,
    ) -> VerificationState:
        data = input_from_bundle(
            bundle,
            request_hash,
            response_hash,
            cpu_required=self.settings.cpu_attestation_required,
        )
        return derive_state(data)


class ProofClient:
    """Client side of the proof fetch: POSTs to the proof endpoint with retries."""

    def __init__(
        self,
        base_url: str,
        session: Optional[Any] = None,
        policy: Optional[RetryPolicy] = None,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
        sleep: Optional[Callable] = None,
        settings: Optional[Settings] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        # An explicit policy wins over the configured one
        self.policy = policy or (settings or load_settings()).retry
        self.timeout = timeout
        self.sleep = sleep

    def _post_proof(self, body: Dict[str, Any]) -> ProofBundle:
        response = self.session.post(
            f"{self.base_url}/verification/proof", json=body, timeout=self.timeout
        )
        if response.status_code == 404:
            raise ProofNotReadyError(f"Proof for {body['verificationId']} not ready")
        if response.status_code == 401:
            raise BackendAuthError("Proof endpoint rejected credentials")
        if response.status_code != 200:
            raise BackendError(
                f"Proof endpoint responded with {response.status_code}",
                status=response.status_code,
            )
        return ProofBundle.model_validate(response.json())

    async def fetch_proof(
        self,
        verification_id: str,
        model: str,
        request_hash: Optional[str] = None,
        response_hash: Optional[str] = None,
    ) -> ProofBundle:
        body = {
            "verificationId": verification_id,
            "model": model,
            "requestHash": request_hash,
            "responseHash": response_hash,
        }

        async def attempt():
            return await asyncio.to_thread(self._post_proof, body)

        if self.sleep is not None:
            return await retry_async(attempt, self.policy, sleep=self.sleep)
        return await retry_async(attempt, self.policy)
