import asyncio
import json
import time

import pytest
import requests

from conftest import EXPECTATIONS, NONCE, FakeResponse, FakeSession, good_claims
from proof_verifier.errors import (
    AttestationTimeoutError,
    AttestationUnavailableError,
    ExpectationsMissingError,
    InvalidPayloadError,
    NrasResponseError,
    PayloadTooLargeError,
)
from proof_verifier.verifiers.nvidia import NvidiaGpuVerifier, parse_nras_response

NVIDIA_PAYLOAD = {
    "nonce": NONCE,
    "arch": "HOPPER",
    "evidence_list": [{"evidence": "qhE=", "certificate": "Y2VydA=="}],
    "extra_field": "not sent to NRAS",
}


def make_verifier(token_verifier, *responses):
    session = FakeSession(*responses)
    return NvidiaGpuVerifier(token_verifier=token_verifier, session=session), session


@pytest.mark.asyncio
async def test_verify_with_array_response(token_verifier, signing_key):
    token = signing_key.sign(good_claims())
    gpu = signing_key.sign({"ueid": "4242424242"})
    verifier, session = make_verifier(
        token_verifier, FakeResponse(200, [["JWT", token], {"GPU-0": gpu}])
    )

    result = await verifier.verify(NVIDIA_PAYLOAD, NONCE, EXPECTATIONS)

    assert result.verified is True
    assert result.jwt == token
    assert "GPU-0" in result.gpus

    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url == "https://nras.attestation.nvidia.com/v3/attest/gpu"
    assert kwargs["timeout"] == 10.0
    assert kwargs["json"] == {
        "nonce": NONCE,
        "arch": "HOPPER",
        "evidence_list": NVIDIA_PAYLOAD["evidence_list"],
    }


@pytest.mark.asyncio
async def test_verify_with_object_response(token_verifier, signing_key):
    token = signing_key.sign(good_claims())
    verifier, _ = make_verifier(token_verifier, FakeResponse(200, {"jwt": token}))

    result = await verifier.verify(json.dumps(NVIDIA_PAYLOAD), NONCE, EXPECTATIONS)
    assert result.verified is True
    assert result.gpus is None


@pytest.mark.asyncio
async def test_missing_expectations_makes_no_network_call(token_verifier):
    verifier, session = make_verifier(token_verifier, FakeResponse(200, {}))
    expectations = EXPECTATIONS.model_copy(update={"measurements": []})

    with pytest.raises(ExpectationsMissingError) as exc_info:
        await verifier.verify(NVIDIA_PAYLOAD, NONCE, expectations)

    assert exc_info.value.missing == ["measurements"]
    assert session.calls == []


@pytest.mark.asyncio
async def test_payload_too_large(token_verifier):
    verifier, _ = make_verifier(token_verifier, FakeResponse(432, text="too big"))
    with pytest.raises(PayloadTooLargeError) as exc_info:
        await verifier.verify(NVIDIA_PAYLOAD, NONCE, EXPECTATIONS)
    assert exc_info.value.suggestions


@pytest.mark.asyncio
async def test_header_too_large_body(token_verifier):
    verifier, _ = make_verifier(
        token_verifier, FakeResponse(400, text="400 Request Header Or Cookie Too Large")
    )
    with pytest.raises(PayloadTooLargeError):
        await verifier.verify(NVIDIA_PAYLOAD, NONCE, EXPECTATIONS)


@pytest.mark.asyncio
async def test_timeout_is_transient(token_verifier):
    verifier, _ = make_verifier(token_verifier, requests.Timeout("slow"))
    with pytest.raises(AttestationTimeoutError):
        await verifier.verify(NVIDIA_PAYLOAD, NONCE, EXPECTATIONS)


@pytest.mark.asyncio
async def test_server_error_is_transient(token_verifier):
    verifier, _ = make_verifier(token_verifier, FakeResponse(503, text="unavailable"))
    with pytest.raises(AttestationUnavailableError):
        await verifier.verify(NVIDIA_PAYLOAD, NONCE, EXPECTATIONS)


@pytest.mark.asyncio
async def test_client_error_is_trust_failure(token_verifier):
    verifier, _ = make_verifier(token_verifier, FakeResponse(400, text="bad evidence"))
    with pytest.raises(NrasResponseError):
        await verifier.verify(NVIDIA_PAYLOAD, NONCE, EXPECTATIONS)


@pytest.mark.asyncio
async def test_payload_without_evidence_is_rejected(token_verifier):
    verifier, session = make_verifier(token_verifier, FakeResponse(200, {}))
    with pytest.raises(InvalidPayloadError):
        await verifier.verify({"nonce": NONCE, "arch": "HOPPER"}, NONCE, EXPECTATIONS)
    assert session.calls == []


def test_parse_nras_response_shapes():
    assert parse_nras_response([["JWT", "a.b.c"], {"GPU-0": "d.e.f"}]) == (
        "a.b.c",
        {"GPU-0": "d.e.f"},
    )
    assert parse_nras_response({"jwt": "a.b.c", "gpus": {"GPU-0": "x"}}) == (
        "a.b.c",
        {"GPU-0": "x"},
    )


@pytest.mark.parametrize("parsed", [[], {"gpus": {}}, "plain text", [["JWT"]]])
def test_parse_nras_response_missing_jwt(parsed):
    with pytest.raises(NrasResponseError):
        parse_nras_response(parsed)


class SlowSession(FakeSession):
    def __init__(self, delay, *responses):
        super().__init__(*responses)
        self.delay = delay

    def post(self, url, **kwargs):
        time.sleep(self.delay)
        return super().post(url, **kwargs)


@pytest.mark.asyncio
async def test_concurrent_verifications_do_not_block_each_other(token_verifier, signing_key):
    token = signing_key.sign(good_claims())
    session = SlowSession(0.4, FakeResponse(200, {"jwt": token}))
    verifier = NvidiaGpuVerifier(token_verifier=token_verifier, session=session)

    started = time.monotonic()
    results = await asyncio.gather(
        verifier.verify(NVIDIA_PAYLOAD, NONCE, EXPECTATIONS),
        verifier.verify(NVIDIA_PAYLOAD, NONCE, EXPECTATIONS),
    )
    elapsed = time.monotonic() - started

    assert all(r.verified for r in results)
    assert len(session.calls) == 2
    assert elapsed < 0.75
