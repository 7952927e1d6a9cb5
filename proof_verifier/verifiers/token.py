import base64
import binascii
import logging
import re
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import jwt
from jwt import PyJWK

from ..attestation import EVIDENCE_LIST_ALIASES, NONCE_CLAIM_ALIASES, first_alias
from ..config import ALLOWED_TOKEN_ALGORITHMS, NRAS_AUDIENCE
from ..errors import (
    ClaimValidationError,
    ExpectationsMissingError,
    InvalidKeyError,
    MalformedTokenError,
    NoMatchingKeyError,
    TokenSignatureError,
    UnsupportedAlgorithmError,
)
from ..jwks import JwksCache
from ..types import AttestationExpectations, HardwareTokenResult

logger = logging.getLogger(__name__)

_B64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]*$")

OVERALL_RESULT_CLAIM = "x-nvidia-overall-att-result"
ARCH_CHECK_CLAIM = "x-nvidia-gpu-arch-check"

# Where each hardware identity field may appear, in claims or in the evidence
ARCH_KEYS = ("x-nvidia-gpu-arch", "arch", "gpu_arch")
DEVICE_CERT_HASH_KEYS = (
    "x-nvidia-gpu-device-cert-hash",
    "device_cert_hash",
    "deviceCertHash",
)
RIM_HASH_KEYS = ("x-nvidia-gpu-rim-hash", "rim_hash", "rim", "rimHash")
UEID_KEYS = ("ueid",)
MEASUREMENT_KEYS = ("x-nvidia-gpu-measurements", "measurements")


def check_token_segments(token: Any) -> List[str]:
    """Split a compact token, rejecting anything that is not strict base64url."""
    if not isinstance(token, str) or not token:
        raise MalformedTokenError("Token must be a non-empty string")
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedTokenError(f"Token must have 3 segments, got {len(parts)}")
    for name, segment in zip(("header", "payload", "signature"), parts):
        if not segment:
            raise MalformedTokenError(f"Token {name} segment is empty")
        if not _B64URL_SEGMENT.match(segment) or len(segment) % 4 == 1:
            raise MalformedTokenError(f"Token {name} segment is not valid base64url")
    return parts


def _numeric_claim(claims: Dict[str, Any], name: str) -> Optional[float]:
    value = claims.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ClaimValidationError(name, f"NRAS token {name} claim is not a number")
    return value


def check_temporal_claims(claims: Dict[str, Any], now: float):
    nbf = _numeric_claim(claims, "nbf")
    if nbf is not None and now < nbf:
        raise ClaimValidationError("nbf", "NRAS token not yet valid (nbf)")
    exp = _numeric_claim(claims, "exp")
    if exp is not None and now >= exp:
        raise ClaimValidationError("exp", "NRAS token expired (exp)")


def check_audience(claims: Dict[str, Any], audience: str = NRAS_AUDIENCE):
    aud = claims.get("aud")
    if aud is None:
        return
    audiences = aud if isinstance(aud, list) else [aud]
    if audience not in audiences:
        raise ClaimValidationError("aud", f"NRAS audience mismatch (aud={aud})")


def _sources_values(sources: Iterable[Dict[str, Any]], keys: Sequence[str]) -> List[str]:
    values = []
    for source in sources:
        for key in keys:
            value = source.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                values.append(str(value))
    return values


def _measurement_values(sources: Iterable[Dict[str, Any]]) -> List[str]:
    found = []
    for source in sources:
        for key in MEASUREMENT_KEYS:
            for m in source.get(key) or []:
                value = m.get("hash") if isinstance(m, dict) else m
                if value:
                    found.append(str(value))
        # submods: {"GPU-0": ["DIGEST", ["SHA-256", "<hash>"]]}
        submods = source.get("submods")
        if isinstance(submods, dict):
            for entry in submods.values():
                if (
                    isinstance(entry, list)
                    and len(entry) == 2
                    and isinstance(entry[1], list)
                    and entry[1]
                ):
                    found.append(str(entry[1][-1]))
        evidence = source.get("evidence")
        if isinstance(evidence, str) and evidence:
            try:
                found.append(base64.b64decode(evidence, validate=True).hex())
            except (binascii.Error, ValueError):
                logger.debug("Evidence blob is not base64, skipped")
    return found


class AttestationTokenVerifier:
    """
    Validates a hardware attestation token issued by NRAS.

    Steps run in a fixed order: header decode, key lookup, signature, standard
    claims, nonce binding, overall result, hardware identity. Failures in the
    first three raise (the token cannot be trusted at all); failures after
    that are collected as reasons on a result with ``verified=False``.
    """

    def __init__(
        self,
        jwks_cache: Optional[JwksCache] = None,
        audience: str = NRAS_AUDIENCE,
        clock: Callable[[], float] = time.time,
    ):
        self.jwks_cache = jwks_cache or JwksCache(clock=clock)
        self.audience = audience
        self.clock = clock

    def decode_verified(self, token: str) -> Dict[str, Any]:
        """Steps 1-3: returns the claims of a token whose signature checks out."""
        check_token_segments(token)
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise MalformedTokenError(f"Cannot decode token header: {e}") from e

        kid = header.get("kid")
        jwk = self.jwks_cache.find_key(kid)
        if jwk is None:
            raise NoMatchingKeyError(kid)

        alg = header.get("alg")
        if alg not in ALLOWED_TOKEN_ALGORITHMS:
            raise UnsupportedAlgorithmError(alg)

        try:
            key = PyJWK(jwk, algorithm=alg).key
        except (jwt.PyJWKError, jwt.InvalidKeyError, ValueError, TypeError) as e:
            raise InvalidKeyError(f"Invalid JWK {kid}: {e}") from e

        try:
            return jwt.decode(
                token,
                key=key,
                algorithms=[alg],
                options={
                    "verify_signature": True,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_aud": False,
                    "verify_iss": False,
                    "verify_sub": False,
                    "verify_jti": False,
                },
            )
        except jwt.InvalidSignatureError as e:
            raise TokenSignatureError("JWT signature verification failed") from e
        except jwt.InvalidTokenError as e:
            raise MalformedTokenError(f"JWT could not be decoded: {e}") from e

    def verify(
        self,
        token: str,
        nonce: Optional[str],
        expectations: AttestationExpectations,
        gpu_tokens: Optional[Dict[str, Any]] = None,
        evidence: Optional[Dict[str, Any]] = None,
    ) -> HardwareTokenResult:
        missing = expectations.missing_fields()
        if missing:
            raise ExpectationsMissingError(missing)

        claims = self.decode_verified(token)

        gpu_claims: Dict[str, Dict[str, Any]] = {}
        for name, gpu_token in (gpu_tokens or {}).items():
            if not isinstance(gpu_token, str):
                logger.warning(f"Skipping non-string token for {name}")
                continue
            gpu_claims[name] = self.decode_verified(gpu_token)

        reasons: List[str] = []

        # 4. Standard claims
        for check in (
            lambda: check_temporal_claims(claims, self.clock()),
            lambda: check_audience(claims, self.audience),
        ):
            try:
                check()
            except ClaimValidationError as e:
                reasons.append(str(e))

        # 5. Nonce binding
        if not nonce:
            reasons.append("No expected nonce supplied")
        else:
            alias, token_nonce = first_alias(claims, NONCE_CLAIM_ALIASES, "token nonce")
            if token_nonce is None:
                logger.warning(
                    f"No nonce claim under any of {NONCE_CLAIM_ALIASES}; "
                    f"claims present: {sorted(claims.keys())}"
                )
                reasons.append("NRAS nonce missing from token")
            else:
                logger.info(f"Token nonce taken from '{alias}' claim")
                if str(token_nonce).lower() != nonce.lower():
                    reasons.append(
                        f"NRAS nonce mismatch: expected {nonce}, got {token_nonce}"
                    )

        # 6. Overall result (no short-circuit)
        if claims.get(OVERALL_RESULT_CLAIM) is not True:
            reasons.append("overall attestation result failed")

        # 7. Hardware identity
        reasons.extend(
            self._check_identity(claims, gpu_claims, expectations, evidence)
        )

        logger.info(
            "NRAS token evaluated: "
            f"overall={claims.get(OVERALL_RESULT_CLAIM)}, "
            f"hwmodel={claims.get('hwmodel')}, "
            f"driver={claims.get('x-nvidia-gpu-driver-version')}, "
            f"reasons={len(reasons)}"
        )

        return HardwareTokenResult(
            verified=not reasons,
            claims=claims,
            reasons=reasons,
            jwt=token,
            gpus=gpu_claims or None,
        )

    def _check_identity(
        self,
        claims: Dict[str, Any],
        gpu_claims: Dict[str, Dict[str, Any]],
        expectations: AttestationExpectations,
        evidence: Optional[Dict[str, Any]],
    ) -> List[str]:
        sources: List[Dict[str, Any]] = [claims, *gpu_claims.values()]
        if isinstance(evidence, dict):
            sources.append(evidence)
            for alias in EVIDENCE_LIST_ALIASES:
                for item in evidence.get(alias) or []:
                    if isinstance(item, dict):
                        sources.append(item)

        reasons = []
        if any(source.get(ARCH_CHECK_CLAIM) is False for source in sources):
            reasons.append("GPU architecture check failed")

        for label, keys, expected in (
            ("arch", ARCH_KEYS, expectations.arch),
            ("device_cert_hash", DEVICE_CERT_HASH_KEYS, expectations.device_cert_hash),
            ("rim_hash", RIM_HASH_KEYS, expectations.rim_hash),
            ("ueid", UEID_KEYS, expectations.ueid),
        ):
            attested = {v.lower() for v in _sources_values(sources, keys)}
            if expected.lower() not in attested:
                reasons.append(f"Missing expected {label}")

        attested_measurements = {m.lower() for m in _measurement_values(sources)}
        if not {m.lower() for m in expectations.measurements} <= attested_measurements:
            reasons.append("Missing expected measurements")
        return reasons
