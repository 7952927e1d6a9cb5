import base64
import hashlib
import json

import pytest

from proof_verifier.attestation import (
    build_nras_payload,
    extract_expectations,
    extract_intel_quote,
    extract_signing_address,
    find_nvidia_payload,
    normalize_signature_payload,
)
from proof_verifier.errors import InvalidPayloadError

CERT = b"-----BEGIN CERTIFICATE-----fake-----END CERTIFICATE-----"
EVIDENCE = b"\xde\xad\xbe\xef"

NVIDIA_PAYLOAD = {
    "nonce": "ab" * 32,
    "arch": "HOPPER",
    "evidence_list": [
        {
            "certificate": base64.b64encode(CERT).decode(),
            "evidence": base64.b64encode(EVIDENCE).decode(),
            "rim": "rim-0001",
            "ueid": "4242",
            "measurements": [{"hash": "aa11"}, "bb22"],
        }
    ],
}


def report(**extra):
    data = {
        "signing_address": "0xsigner",
        "intel_quote": "04000200",
        "nvidia_payload": json.dumps(NVIDIA_PAYLOAD),
    }
    data.update(extra)
    return data


def test_extract_expectations_from_report():
    expectations = extract_expectations(report())

    assert expectations.arch == "HOPPER"
    assert expectations.device_cert_hash == hashlib.sha256(CERT).hexdigest()
    assert expectations.rim_hash == "rim-0001"
    assert expectations.ueid == "4242"
    assert expectations.measurements == ["deadbeef", "aa11", "bb22"]
    assert expectations.missing_fields() == []


def test_extract_expectations_from_model_attestation():
    attestation = {"model_attestations": [{"nvidia_payload": NVIDIA_PAYLOAD}]}
    assert extract_expectations(attestation).ueid == "4242"


def test_partial_expectations_report_missing_fields():
    payload = {"nonce": "ab" * 32, "evidence_list": [{"certificate": "not base64!"}]}
    expectations = extract_expectations({"nvidia_payload": payload})
    assert expectations.arch == "HOPPER"
    assert expectations.missing_fields() == [
        "deviceCertHash",
        "rimHash",
        "ueid",
        "measurements",
    ]


def test_extract_expectations_without_payload():
    with pytest.raises(InvalidPayloadError):
        extract_expectations({"signing_address": "0x1"})
    with pytest.raises(InvalidPayloadError):
        extract_expectations({"nvidia_payload": "{not json"})


def test_find_and_build_nras_payload_from_gateway():
    attestation = {
        "gateway_attestation": {"nvidia_payload": json.dumps(NVIDIA_PAYLOAD)},
    }
    assert find_nvidia_payload(attestation)["arch"] == "HOPPER"

    minimal = build_nras_payload(attestation)
    assert set(minimal) == {"nonce", "arch", "evidence_list"}


def test_build_nras_payload_nonce_aliases_and_default_arch():
    payload = {
        "x-nvidia-eat-nonce": "cd" * 32,
        "evidenceList": [{"evidence": "qhE="}],
    }
    minimal = build_nras_payload(payload)
    assert minimal == {
        "nonce": "cd" * 32,
        "arch": "HOPPER",
        "evidence_list": [{"evidence": "qhE="}],
    }


def test_build_nras_payload_rejections():
    with pytest.raises(InvalidPayloadError, match="Invalid JSON"):
        build_nras_payload("{oops")
    with pytest.raises(InvalidPayloadError, match="missing required fields"):
        build_nras_payload({"evidence_list": [{"evidence": "qhE="}]})
    with pytest.raises(InvalidPayloadError, match="invalid items"):
        build_nras_payload({"nonce": "ab", "evidence_list": ["qhE="]})


def test_signing_address_and_quote_lookup():
    gateway_first = {
        "signing_address": "0xtop",
        "gateway_attestation": {"signing_address": "0xgateway", "intel_quote": "11"},
        "intel_quote": "22",
    }
    assert extract_signing_address(gateway_first) == "0xgateway"
    assert extract_intel_quote(gateway_first) == "22"
    assert extract_signing_address({"model_attestations": [{"signing_address": "0xm"}]}) == "0xm"
    assert extract_intel_quote(None) is None


def test_normalize_signature_payload():
    wrapped = {"data": {"text": "a:b", "signature": "0x01", "signing_address": "0x02"}}
    sig = normalize_signature_payload(wrapped)
    assert (sig.text, sig.signature, sig.signing_address) == ("a:b", "0x01", "0x02")

    assert normalize_signature_payload({"result": {"signature": "0x03"}}).signature == "0x03"
    assert normalize_signature_payload("0x04").signature == "0x04"
    assert normalize_signature_payload({"unrelated": True}) is None
    assert normalize_signature_payload(None) is None
