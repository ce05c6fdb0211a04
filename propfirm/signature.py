"""
signature.py — Ownership proof for onboarding applicants.

An applicant proves control of an address by personal-signing (EIP-191) the
message `EngineConfig.auth_message(address)`. The verifier only answers
yes or no; it never raises on malformed input.

Usage:
    verifier = EthSignatureVerifier()
    ok = verifier.verify(address, cfg.auth_message(address), signature)
"""

from __future__ import annotations

from eth_account import Account
from eth_account.messages import encode_defunct
from loguru import logger


class EthSignatureVerifier:
    """Recovers the signer of a personal-sign message and compares addresses."""

    def verify(self, address: str, message: str, signature: str) -> bool:
        try:
            recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as e:
            logger.debug(f"SignatureVerifier: cannot recover signer for {address}: {e}")
            return False
        return recovered.lower() == address.strip().lower()


def sign_auth_message(private_key: str, message: str) -> str:
    """Sign `message` the way an applicant's wallet would. Used by tooling and tests."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return "0x" + signed.signature.hex().removeprefix("0x")
