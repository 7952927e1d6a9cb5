import secrets
from types import SimpleNamespace

import pytest

from proof_verifier.verifiers import intel
from proof_verifier.verifiers.intel import (
    IntelTdxVerifier,
    extract_report_data,
    verify_report_data,
)


def make_report_data(signing_address_hex, nonce_hex):
    # Address (20 bytes) + Padding (12 bytes) + Nonce (32 bytes)
    addr_padded = bytes.fromhex(signing_address_hex[2:]).ljust(32, b"\x00")
    return addr_padded + bytes.fromhex(nonce_hex)


def make_quote(report_data):
    # 48-byte header, 520 bytes of TD report fields, then report data
    return b"\x04\x00" + b"\x00" * 46 + b"\x11" * 520 + report_data + b"\x22" * 64


def test_verify_report_data():
    nonce_hex = secrets.token_hex(32)
    signing_address_hex = "0x" + secrets.token_hex(20)
    report_data_hex = make_report_data(signing_address_hex, nonce_hex).hex()

    result = verify_report_data(report_data_hex, signing_address_hex, nonce_hex)
    assert result["valid"] is True
    assert result["address_match"] is True
    assert result["nonce_match"] is True
    assert result["attested_nonce"] == nonce_hex

    # Mismatched nonce
    result = verify_report_data(report_data_hex, signing_address_hex, secrets.token_hex(32))
    assert result["valid"] is False
    assert result["nonce_match"] is False
    assert result["address_match"] is True

    # Mismatched address
    bad_addr = "0x" + secrets.token_hex(20)
    result = verify_report_data(report_data_hex, bad_addr, nonce_hex)
    assert result["valid"] is False
    assert result["address_match"] is False
    assert result["nonce_match"] is True

    # Invalid report data length
    result = verify_report_data("deadbeef", signing_address_hex, nonce_hex)
    assert result["valid"] is False
    assert "length" in result["error"]


def test_extract_report_data():
    report_data = bytes(range(64))
    assert extract_report_data(make_quote(report_data)) == report_data
    assert extract_report_data(b"\x00" * 100) is None


@pytest.mark.asyncio
async def test_intel_verifier_binds_address_and_nonce(monkeypatch):
    async def fake_verify(quote_bytes):
        return SimpleNamespace(status="UpToDate", advisory_ids=[])

    monkeypatch.setattr(intel.dcap_qvl, "get_collateral_and_verify", fake_verify)

    nonce_hex = secrets.token_hex(32)
    address = "0x" + secrets.token_hex(20)
    quote = make_quote(make_report_data(address, nonce_hex))

    result = await IntelTdxVerifier().verify(quote.hex(), signing_address=address, nonce=nonce_hex)
    assert result.verified is True
    assert result.status == "UpToDate"
    assert result.attested_nonce == nonce_hex

    result = await IntelTdxVerifier().verify(
        quote, signing_address=address, nonce=secrets.token_hex(32)
    )
    assert result.verified is False
    assert result.reasons == ["Report data binding failed: Address/Nonce mismatch"]


@pytest.mark.asyncio
async def test_intel_verifier_reports_bad_tcb_status(monkeypatch):
    async def fake_verify(quote_bytes):
        return SimpleNamespace(status="Revoked", advisory_ids=["INTEL-SA-00001"])

    monkeypatch.setattr(intel.dcap_qvl, "get_collateral_and_verify", fake_verify)

    nonce_hex = secrets.token_hex(32)
    address = "0x" + secrets.token_hex(20)
    quote = make_quote(make_report_data(address, nonce_hex))

    result = await IntelTdxVerifier().verify(quote, signing_address=address, nonce=nonce_hex)
    assert result.verified is False
    assert result.reasons == ["Intel quote verification failed with status: Revoked"]
    assert result.claims["advisory_ids"] == ["INTEL-SA-00001"]


@pytest.mark.asyncio
async def test_intel_verifier_malformed_quote():
    result = await IntelTdxVerifier().verify("zz-not-hex")
    assert result.verified is False
    assert result.reasons[0].startswith("Malformed Intel quote")
