import json

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import ECAlgorithm

from proof_verifier.jwks import JwksCache
from proof_verifier.types import AttestationExpectations
from proof_verifier.verifiers.token import AttestationTokenVerifier

NOW = 1_700_000_000.0
NONCE = "ab" * 32


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    """Stands in for requests.Session; replays queued responses or errors."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        result = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class SigningKey:
    def __init__(self, kid="nras-key-1", alg="ES256"):
        curve = ec.SECP256R1() if alg == "ES256" else ec.SECP384R1()
        self.kid = kid
        self.alg = alg
        self.private_key = ec.generate_private_key(curve)

    def jwk(self):
        key = ECAlgorithm.to_jwk(self.private_key.public_key(), as_dict=True)
        key.update({"kid": self.kid, "alg": self.alg, "use": "sig"})
        return key

    def sign(self, claims, kid=None):
        return jwt.encode(
            claims,
            self.private_key,
            algorithm=self.alg,
            headers={"kid": kid or self.kid},
        )


EXPECTATIONS = AttestationExpectations(
    arch="HOPPER",
    device_cert_hash="c0ffee" * 10 + "abcd",
    rim_hash="rim-0001",
    ueid="4242424242",
    measurements=["aa11", "bb22"],
)


def good_claims(nonce=NONCE, **overrides):
    claims = {
        "iss": "https://nras.attestation.nvidia.com",
        "aud": "nvidia-attestation",
        "iat": int(NOW) - 10,
        "nbf": int(NOW) - 10,
        "exp": int(NOW) + 3600,
        "eat_nonce": nonce,
        "x-nvidia-overall-att-result": True,
        "x-nvidia-gpu-arch-check": True,
        "x-nvidia-gpu-arch": "HOPPER",
        "x-nvidia-gpu-device-cert-hash": EXPECTATIONS.device_cert_hash,
        "x-nvidia-gpu-rim-hash": "RIM-0001",
        "ueid": "4242424242",
        "x-nvidia-gpu-measurements": ["AA11", "bb22", "cc33"],
        "hwmodel": "GH100 A01 GSP BROM",
    }
    claims.update(overrides)
    return claims


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def signing_key():
    return SigningKey()


@pytest.fixture
def jwks_cache(signing_key, clock):
    session = FakeSession(FakeResponse(200, {"keys": [signing_key.jwk()]}))
    return JwksCache(session=session, clock=clock)


@pytest.fixture
def token_verifier(jwks_cache, clock):
    return AttestationTokenVerifier(jwks_cache=jwks_cache, clock=clock)
