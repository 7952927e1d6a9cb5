from .base import Verifier
from .token import AttestationTokenVerifier
from .nvidia import NvidiaGpuVerifier, parse_nras_response
from .intel import IntelTdxVerifier, verify_report_data
from .signature import recover_signer, verify_signed_text

# - AttestationTokenVerifier: NRAS token signature, claims, nonce and GPU identity
# - NvidiaGpuVerifier: submits GPU evidence to NRAS, then validates the token
# - IntelTdxVerifier: CPU quote verification and report-data nonce binding
# - verify_signed_text: ECDSA (EIP-191) check of the backend's response signature

__all__ = [
    "Verifier",
    "AttestationTokenVerifier",
    "NvidiaGpuVerifier",
    "IntelTdxVerifier",
    "parse_nras_response",
    "verify_report_data",
    "recover_signer",
    "verify_signed_text",
]
