from .types import (
    AttestationExpectations,
    HardwareTokenResult,
    NonceCheck,
    ProofBundle,
    VerificationSession,
    VerificationState,
)
from .sdk import ProofClient, ProofVerifier
from .sessions import VerificationSessionStore
from .jwks import JwksCache
from .state import derive_state
from .providers import NearaiProvider
from .verifiers import AttestationTokenVerifier, IntelTdxVerifier, NvidiaGpuVerifier

__all__ = [
    "AttestationExpectations",
    "HardwareTokenResult",
    "NonceCheck",
    "ProofBundle",
    "VerificationSession",
    "VerificationState",
    "ProofClient",
    "ProofVerifier",
    "VerificationSessionStore",
    "JwksCache",
    "derive_state",
    "NearaiProvider",
    "AttestationTokenVerifier",
    "IntelTdxVerifier",
    "NvidiaGpuVerifier",
]
