from typing import List, Optional


class ProofVerificationError(Exception):
    """Base class for every error raised while evaluating a proof."""


# --- Structural / trust errors: the proof cannot be evaluated at all ---


class TrustError(ProofVerificationError):
    pass


class MalformedTokenError(TrustError):
    pass


class NoMatchingKeyError(TrustError):
    def __init__(self, kid: Optional[str]):
        self.kid = kid
        super().__init__(f"No matching JWK for NRAS token (kid={kid})")


class UnsupportedAlgorithmError(TrustError):
    def __init__(self, alg: Optional[str]):
        self.alg = alg
        super().__init__(f"Unsupported token algorithm: {alg}")


class TokenSignatureError(TrustError):
    pass


class InvalidKeyError(TrustError):
    pass


class FetchError(TrustError):
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class EmptyKeySetError(TrustError):
    pass


class NrasResponseError(TrustError):
    pass


# --- Claim violations: evaluated, but the subject failed to qualify ---


class ClaimValidationError(ProofVerificationError):
    def __init__(self, claim: str, message: str):
        self.claim = claim
        super().__init__(message)


# --- Transient infrastructure errors: retry with backoff ---


class TransientError(ProofVerificationError):
    pass


class AttestationTimeoutError(TransientError):
    pass


class AttestationUnavailableError(TransientError):
    pass


# --- Bad requests ---


class InvalidPayloadError(ProofVerificationError):
    def __init__(self, message: str, suggestions: Optional[List[str]] = None):
        self.suggestions = suggestions or []
        super().__init__(message)


class PayloadTooLargeError(InvalidPayloadError):
    pass


class ExpectationsMissingError(InvalidPayloadError):
    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            f"Missing expected hardware values: {', '.join(self.missing)}",
            suggestions=[f"Provide {name}" for name in self.missing],
        )


# --- Inference backend / session lookups ---


class SessionNotFoundError(ProofVerificationError):
    def __init__(self, verification_id: str):
        self.verification_id = verification_id
        super().__init__(
            f"No live verification session for {verification_id}; it may have "
            "expired, register again and retry"
        )


class ProofNotReadyError(ProofVerificationError):
    pass


class BackendAuthError(ProofVerificationError):
    pass


class BackendError(ProofVerificationError):
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)
