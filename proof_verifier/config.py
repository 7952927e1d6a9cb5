import logging
import os
from typing import Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from .retry import RetryPolicy

load_dotenv()

logger = logging.getLogger(__name__)

# Protocol trust anchors. Deliberately not configurable.
NRAS_URL = "https://nras.attestation.nvidia.com/v3/attest/gpu"
NRAS_JWKS_URL = "https://nras.attestation.nvidia.com/.well-known/jwks.json"
NRAS_AUDIENCE = "nvidia-attestation"
NRAS_TIMEOUT_SECONDS = 10.0
ALLOWED_TOKEN_ALGORITHMS = ("ES256", "ES384")

JWKS_TTL_SECONDS = 5 * 60
SESSION_TTL_SECONDS = 5 * 60  # matches the backend's proof availability window
SWEEP_INTERVAL_SECONDS = 60

NEARAI_API_BASE = "https://cloud-api.near.ai/v1"
BACKEND_TIMEOUT_SECONDS = 30.0


def get_api_key() -> Optional[str]:
    return os.getenv("NEAR_AI_CLOUD_API_KEY")


class Settings(BaseModel):
    api_base: str = NEARAI_API_BASE
    signing_algo: str = "ecdsa"
    # True, False, or "auto": required iff the attestation carries an Intel quote
    cpu_attestation_required: Union[bool, str] = "auto"
    sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS
    retry: RetryPolicy = RetryPolicy()


def default_config_path() -> str:
    config_path = os.path.join(
        os.path.dirname(__file__), "../config/verifier_config.yml"
    )
    if not os.path.exists(config_path):
        config_path = "config/verifier_config.yml"
    return config_path


def load_settings(config_path: Optional[str] = None) -> Settings:
    config_path = config_path or default_config_path()
    if not os.path.exists(config_path):
        logger.info(f"No verifier config at {config_path}, using defaults")
        return Settings()

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    backend = config.get("backend", {}) or {}
    verification = config.get("verification", {}) or {}
    data = {
        "api_base": backend.get("api_base", NEARAI_API_BASE),
        "signing_algo": backend.get("signing_algo", "ecdsa"),
        "cpu_attestation_required": verification.get(
            "cpu_attestation_required", "auto"
        ),
        "sweep_interval_seconds": verification.get(
            "sweep_interval_seconds", SWEEP_INTERVAL_SECONDS
        ),
    }
    if config.get("retry"):
        data["retry"] = RetryPolicy(**config["retry"])
    return Settings(**data)
