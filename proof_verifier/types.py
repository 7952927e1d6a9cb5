from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class OverallStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class VerificationSession(BaseModel):
    verification_id: str
    nonce: str  # 64 hex characters
    created_at: float
    expires_at: float
    request_hash: Optional[str] = None
    response_hash: Optional[str] = None


class AttestationExpectations(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    arch: Optional[str] = None
    device_cert_hash: Optional[str] = Field(None, alias="deviceCertHash")
    rim_hash: Optional[str] = Field(None, alias="rimHash")
    ueid: Optional[str] = None
    measurements: List[str] = []

    def missing_fields(self) -> List[str]:
        missing = []
        for name, alias in (
            ("arch", "arch"),
            ("device_cert_hash", "deviceCertHash"),
            ("rim_hash", "rimHash"),
            ("ueid", "ueid"),
        ):
            if not getattr(self, name):
                missing.append(alias)
        if not self.measurements:
            missing.append("measurements")
        return missing


class HardwareTokenResult(BaseModel):
    verified: bool
    claims: Dict[str, Any] = {}
    reasons: List[str] = []
    jwt: Optional[str] = None
    gpus: Optional[Dict[str, Any]] = None


class CpuAttestationResult(BaseModel):
    verified: bool
    status: Optional[str] = None
    report_data: Optional[str] = None
    attested_nonce: Optional[str] = None
    claims: Dict[str, Any] = {}
    reasons: List[str] = []


class NonceCheck(BaseModel):
    expected: Optional[str] = None
    attested: Optional[str] = None
    nras: Optional[str] = None
    valid: bool = False


class SignaturePayload(BaseModel):
    text: Optional[str] = None
    signature: Optional[str] = None
    signing_address: Optional[str] = None
    signing_algo: Optional[str] = None


class ProofBundle(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    signature: Optional[SignaturePayload] = None
    attestation: Optional[Dict[str, Any]] = None
    hardware_token: Optional[HardwareTokenResult] = Field(None, alias="hardwareToken")
    cpu: Optional[CpuAttestationResult] = Field(None, alias="intel")
    nonce_check: Optional[NonceCheck] = Field(None, alias="nonceCheck")


class VerificationStep(BaseModel):
    status: StepStatus = StepStatus.PENDING
    message: Optional[str] = None
    required: bool = True


class VerificationState(BaseModel):
    steps: Dict[str, VerificationStep]
    overall: OverallStatus
    reasons: List[str] = []


class VerificationInput(BaseModel):
    request_hash: Optional[str] = None
    response_hash: Optional[str] = None
    signature_text: Optional[str] = None
    signature: Optional[str] = None
    signature_address: Optional[str] = None
    attested_address: Optional[str] = None
    hardware_verified: Optional[bool] = None
    hardware_reasons: List[str] = []
    cpu_verified: Optional[bool] = None
    cpu_reasons: List[str] = []
    nonce_check: Optional[NonceCheck] = None
    cpu_required: bool = False
