import logging
from typing import Any, Callable, Dict, Optional

import requests

from ..attestation import normalize_signature_payload
from ..config import BACKEND_TIMEOUT_SECONDS, NEARAI_API_BASE, get_api_key
from ..errors import (
    AttestationTimeoutError,
    AttestationUnavailableError,
    BackendAuthError,
    BackendError,
    ProofNotReadyError,
)
from ..types import SignaturePayload
from .base import InferenceBackend

logger = logging.getLogger(__name__)


class NearaiProvider(InferenceBackend):
    def __init__(
        self,
        api_base: str = NEARAI_API_BASE,
        api_key: Optional[str] = None,
        signing_algo: str = "ecdsa",
        session: Optional[Any] = None,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
        api_key_source: Callable[[], Optional[str]] = get_api_key,
    ):
        self.api_base = api_base.rstrip("/")
        self._api_key = api_key
        self.api_key_source = api_key_source
        self.signing_algo = signing_algo
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        api_key = self._api_key or self.api_key_source()
        if not api_key:
            raise BackendAuthError("NEAR_AI_CLOUD_API_KEY not configured")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _get(self, path: str, params: Dict[str, Any], what: str) -> Any:
        url = f"{self.api_base}{path}"
        logger.info(f"[Near] Fetching {what} from {url}")
        try:
            response = self.session.get(
                url, params=params, headers=self._headers(), timeout=self.timeout
            )
        except requests.Timeout as e:
            raise AttestationTimeoutError(f"Timed out fetching {what}") from e
        except requests.RequestException as e:
            raise AttestationUnavailableError(f"Failed to fetch {what}: {e}") from e

        if response.status_code in (401, 403):
            raise BackendAuthError(f"Backend rejected credentials fetching {what}")
        if response.status_code == 404:
            raise ProofNotReadyError(f"{what.capitalize()} not available yet")
        if response.status_code >= 500:
            raise AttestationUnavailableError(
                f"Backend responded with status {response.status_code} fetching {what}"
            )
        if response.status_code != 200:
            raise BackendError(
                f"Failed to fetch {what}: {response.status_code}",
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Backend returned invalid JSON for {what}") from e

    def fetch_signature(self, verification_id: str, model: str) -> SignaturePayload:
        data = self._get(
            f"/signature/{verification_id}",
            {"model": model, "signing_algo": self.signing_algo},
            "signature",
        )
        signature = normalize_signature_payload(data)
        if signature is None or not signature.signature:
            raise BackendError("Backend signature response has no signature")
        return signature

    def fetch_attestation_report(
        self, model: str, nonce: str, signing_address: Optional[str] = None
    ) -> Dict[str, Any]:
        params = {"model": model, "signing_algo": self.signing_algo, "nonce": nonce}
        if signing_address:
            params["signing_address"] = signing_address
        data = self._get("/attestation/report", params, "attestation report")
        if not isinstance(data, dict):
            raise BackendError("Attestation report is not an object")
        return data
