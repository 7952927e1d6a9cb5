from typing import Any, Dict, Optional

from ..types import SignaturePayload


class InferenceBackend:
    """Source of the signature and attestation material for a completion."""

    def fetch_signature(self, verification_id: str, model: str) -> SignaturePayload:
        raise NotImplementedError

    def fetch_attestation_report(
        self, model: str, nonce: str, signing_address: Optional[str] = None
    ) -> Dict[str, Any]:
        raise NotImplementedError
