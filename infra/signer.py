"""
Operator key handling: loading, Sui address derivation and transaction signing.

Accepted secret formats:
- 0x-prefixed hex of the 32-byte Ed25519 seed
- base64 of the 32-byte seed, or of 33 bytes with the leading scheme flag

The secret is read from the environment and never logged.
"""

import base64
import binascii
import hashlib
import logging
import os

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ED25519_FLAG = 0x00
TRANSACTION_INTENT = bytes([0, 0, 0])   # scope TransactionData, version V0, app Sui
SEED_LENGTH = 32


def _blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def decode_secret(secret: str) -> bytes:
    """Return the 32-byte Ed25519 seed encoded in `secret`."""
    secret = (secret or "").strip()
    if not secret:
        raise ConfigurationError("Operator private key is empty")
    if secret.startswith("suiprivkey"):
        raise ConfigurationError(
            "Bech32 'suiprivkey' keys are not supported; export the key as 0x-hex or base64"
        )

    try:
        if secret.startswith("0x"):
            raw = bytes.fromhex(secret[2:])
        else:
            raw = base64.b64decode(secret, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise ConfigurationError("Operator private key is neither valid hex nor base64") from exc

    if len(raw) == SEED_LENGTH + 1:
        if raw[0] != ED25519_FLAG:
            raise ConfigurationError(f"Unsupported key scheme flag 0x{raw[0]:02x}; only Ed25519 is supported")
        raw = raw[1:]
    if len(raw) != SEED_LENGTH:
        raise ConfigurationError(f"Operator private key must be {SEED_LENGTH} bytes, got {len(raw)}")
    return raw


class OperatorSigner:
    """Ed25519 operator keypair."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self._public_key_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.address = "0x" + _blake2b_256(bytes([ED25519_FLAG]) + self._public_key_bytes).hex()

    @classmethod
    def from_secret(cls, secret: str) -> "OperatorSigner":
        return cls(Ed25519PrivateKey.from_private_bytes(decode_secret(secret)))

    @classmethod
    def from_env(cls, env_var: str = "OPERATOR_PRIVATE_KEY") -> "OperatorSigner":
        secret = os.getenv(env_var, "")
        if not secret:
            raise ConfigurationError(f"{env_var} is not set; LIVE mode requires an operator key")
        signer = cls.from_secret(secret)
        logger.info(f"Loaded operator key for {signer.address}")
        return signer

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_key_bytes

    def sign_transaction(self, tx_bytes_b64: str) -> str:
        """
        Sign base64 TransactionData bytes.

        Returns the serialized signature: base64(flag || signature || public key).
        """
        tx_bytes = base64.b64decode(tx_bytes_b64)
        digest = _blake2b_256(TRANSACTION_INTENT + tx_bytes)
        signature = self._private_key.sign(digest)
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self._public_key_bytes).decode("ascii")
