"""Deterministic secp256k1 key derivation for boot parameters."""

import hashlib

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

# Order of the secp256k1 group
SECP256K1_ORDER = int(
    "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16
)

SECRET_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 33

_DOMAIN = b"skyimager/bootparams/v1"


def derive_secret_key(*parts: str) -> bytes:
    """Derive a secret key from string parts.

    The same parts always yield the same key; the scalar is mapped into
    [1, n-1] so it is always a valid secp256k1 secret.
    """
    material = b"\x00".join([_DOMAIN, *(p.encode("utf-8") for p in parts)])
    digest = int.from_bytes(hashlib.sha256(material).digest(), "big")
    scalar = digest % (SECP256K1_ORDER - 1) + 1
    return scalar.to_bytes(SECRET_KEY_SIZE, "big")


def public_key(secret_key: bytes) -> bytes:
    """Return the compressed public key of a secret key.

    Raises:
        ValueError: If the secret key is not a valid secp256k1 scalar.
    """
    if len(secret_key) != SECRET_KEY_SIZE:
        raise ValueError(f"secret key must be {SECRET_KEY_SIZE} bytes")
    scalar = int.from_bytes(secret_key, "big")
    if not 0 < scalar < SECP256K1_ORDER:
        raise ValueError("secret key is out of range")
    private = ec.derive_private_key(scalar, ec.SECP256K1())
    return private.public_key().public_bytes(
        Encoding.X962, PublicFormat.CompressedPoint
    )


__all__ = [
    "PUBLIC_KEY_SIZE",
    "SECRET_KEY_SIZE",
    "derive_secret_key",
    "public_key",
]
