import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

from .config import JWKS_TTL_SECONDS, NRAS_JWKS_URL, NRAS_TIMEOUT_SECONDS
from .errors import EmptyKeySetError, FetchError

logger = logging.getLogger(__name__)


class JwksCache:
    """Time-cached copy of the attestation authority's public key set.

    The cache is only written after a successful fetch, so a failed or
    interrupted request leaves the previous state untouched.
    """

    def __init__(
        self,
        url: str = NRAS_JWKS_URL,
        ttl: float = JWKS_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        session: Optional[Any] = None,
        timeout: float = NRAS_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.ttl = ttl
        self.clock = clock
        self.session = session or requests.Session()
        self.timeout = timeout
        self._keys: Optional[Dict[str, Any]] = None
        self._fetched_at = 0.0
        self._lock = threading.Lock()

    def reset(self):
        with self._lock:
            self._keys = None
            self._fetched_at = 0.0

    def get_keys(self) -> Dict[str, Any]:
        now = self.clock()
        with self._lock:
            if self._keys is not None and now - self._fetched_at < self.ttl:
                return self._keys

        keys = self._fetch()

        with self._lock:
            self._keys = keys
            self._fetched_at = now
        return keys

    def find_key(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        for key in self.get_keys().get("keys", []):
            if isinstance(key, dict) and key.get("kid") == kid:
                return key
        return None

    def _fetch(self) -> Dict[str, Any]:
        logger.info(f"Fetching NRAS JWKS from {self.url}")
        try:
            response = self.session.get(
                self.url,
                headers={"accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch NRAS JWKS: {e}") from e

        if response.status_code != 200:
            raise FetchError(
                f"Failed to fetch NRAS JWKS: {response.status_code}",
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise FetchError(f"NRAS JWKS is not valid JSON: {e}") from e

        keys = data.get("keys") if isinstance(data, dict) else None
        if not keys:
            raise EmptyKeySetError("NRAS JWKS is empty")
        return data
