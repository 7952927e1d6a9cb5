import logging
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct

logger = logging.getLogger(__name__)


def recover_signer(text: str, signature: str) -> Optional[str]:
    """Recover the address that produced an EIP-191 ``personal_sign`` signature."""
    try:
        return Account.recover_message(encode_defunct(text=text), signature=signature)
    except Exception as e:
        logger.info(f"Could not recover signer from signature: {e}")
        return None


def verify_signed_text(
    text: Optional[str], signature: Optional[str], signing_address: Optional[str]
) -> bool:
    if not text or not signature or not signing_address:
        return False
    recovered = recover_signer(text, signature)
    return recovered is not None and recovered.lower() == signing_address.lower()
