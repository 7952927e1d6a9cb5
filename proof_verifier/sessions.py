import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional

from .config import SESSION_TTL_SECONDS, SWEEP_INTERVAL_SECONDS
from .types import VerificationSession

logger = logging.getLogger(__name__)


def _new_nonce() -> str:
    return secrets.token_hex(32)


class VerificationSessionStore:
    """
    In-memory registry binding a verification id to a nonce and to the
    request/response hashes recorded for it.

    Sessions live for a fixed TTL. Hash updates never extend the TTL; only
    ``resync`` (a new authoritative nonce) starts a new window.
    """

    def __init__(
        self,
        ttl: float = SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        nonce_factory: Callable[[], str] = _new_nonce,
    ):
        self.ttl = ttl
        self.clock = clock
        self.nonce_factory = nonce_factory
        self._sessions: Dict[str, VerificationSession] = {}
        self._lock = threading.RLock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def _is_expired(self, session: VerificationSession, now: float) -> bool:
        return now > session.expires_at

    def sweep(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [
                vid for vid, s in self._sessions.items() if self._is_expired(s, now)
            ]
            for vid in expired:
                del self._sessions[vid]
        if expired:
            logger.debug(f"Swept {len(expired)} expired verification sessions")
        return len(expired)

    def get(self, verification_id: str) -> Optional[VerificationSession]:
        self.sweep()
        with self._lock:
            session = self._sessions.get(verification_id)
            if session is None or self._is_expired(session, self.clock()):
                self._sessions.pop(verification_id, None)
                return None
            return session.model_copy()

    def register(
        self,
        verification_id: str,
        nonce: Optional[str] = None,
        request_hash: Optional[str] = None,
        response_hash: Optional[str] = None,
    ) -> VerificationSession:
        with self._lock:
            existing = self.get(verification_id)
            if existing:
                merged = existing.model_copy(
                    update={
                        "request_hash": existing.request_hash or request_hash,
                        "response_hash": existing.response_hash or response_hash,
                    }
                )
                self._sessions[verification_id] = merged
                return merged.model_copy()

            now = self.clock()
            session = VerificationSession(
                verification_id=verification_id,
                nonce=nonce or self.nonce_factory(),
                created_at=now,
                expires_at=now + self.ttl,
                request_hash=request_hash,
                response_hash=response_hash,
            )
            self._sessions[verification_id] = session
            logger.info(f"Registered verification session {verification_id}")
            return session.model_copy()

    def update_hashes(
        self,
        verification_id: str,
        request_hash: Optional[str] = None,
        response_hash: Optional[str] = None,
    ) -> Optional[VerificationSession]:
        with self._lock:
            existing = self.get(verification_id)
            if not existing:
                return None
            updated = existing.model_copy(
                update={
                    "request_hash": request_hash or existing.request_hash,
                    "response_hash": response_hash or existing.response_hash,
                }
            )
            self._sessions[verification_id] = updated
            return updated.model_copy()

    def resync(
        self,
        verification_id: str,
        nonce: str,
        request_hash: Optional[str] = None,
        response_hash: Optional[str] = None,
    ) -> VerificationSession:
        with self._lock:
            existing = self.get(verification_id)
            now = self.clock()
            session = VerificationSession(
                verification_id=verification_id,
                nonce=nonce,
                created_at=existing.created_at if existing else now,
                expires_at=now + self.ttl,
                request_hash=request_hash
                or (existing.request_hash if existing else None),
                response_hash=response_hash
                or (existing.response_hash if existing else None),
            )
            self._sessions[verification_id] = session
            logger.info(f"Resynchronized nonce for verification session {verification_id}")
            return session.model_copy()

    def clear(self, verification_id: str):
        with self._lock:
            self._sessions.pop(verification_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def start_sweeper(self, interval: float = SWEEP_INTERVAL_SECONDS):
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop.clear()

        def run():
            while not self._stop.wait(interval):
                try:
                    self.sweep()
                except Exception:
                    logger.exception("Session sweep failed")

        self._sweeper = threading.Thread(
            target=run, name="verification-session-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop_sweeper(self):
        self._stop.set()
        if self._sweeper:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None
