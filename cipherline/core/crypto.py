from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .proto import EncryptedEnvelope

"""
Hybrid end-to-end encryption
----------------------------
Each message gets a fresh AES-256-GCM key and a fresh 96-bit IV. The AES key is
wrapped with the receiver's RSA public key (OAEP, MGF1-SHA256, SHA256), so only
the matching private key can recover it. The server only ever sees the three
base64 fields of an EncryptedEnvelope.

Keys travel as base64 text of their DER encoding (SubjectPublicKeyInfo for the
public half, PKCS#8 for the private half). PEM text is accepted on load.
"""

AES_KEY_BITS = 256
IV_BYTES = 12
MIN_RSA_BITS = 2048

PublicKeyLike = Union[str, bytes, rsa.RSAPublicKey]
PrivateKeyLike = Union[str, bytes, rsa.RSAPrivateKey]


class CryptoError(Exception):
    """Base class for local cryptographic failures."""


class EncryptionError(CryptoError):
    pass


class DecryptionError(CryptoError):
    """The envelope cannot be opened by this party. No plaintext is returned."""


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    private_key: str


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(value: str) -> bytes:
    if not isinstance(value, str):
        raise ValueError("expected base64 text")
    return base64.b64decode(value.encode("ascii"), validate=True)


# ---------------------------------------------------------------------------
# Key handling
# ---------------------------------------------------------------------------

def generate_key_pair(bits: int = MIN_RSA_BITS) -> KeyPair:
    priv = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    priv_der = priv.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    pub_der = priv.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(public_key=b64(pub_der), private_key=b64(priv_der))


def _key_bytes(value: str | bytes) -> tuple[bytes, bool]:
    """Return (raw bytes, is_pem) for a textual or binary key."""
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("-----BEGIN"):
            return text.encode("ascii"), True
        try:
            return b64d(text), False
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key is neither PEM nor base64 DER") from exc
    if value.lstrip().startswith(b"-----BEGIN"):
        return value, True
    return value, False


def load_public_key(value: PublicKeyLike) -> rsa.RSAPublicKey:
    if isinstance(value, rsa.RSAPublicKey):
        return value
    raw, is_pem = _key_bytes(value)
    try:
        key = serialization.load_pem_public_key(raw) if is_pem else serialization.load_der_public_key(raw)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError("malformed public key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("public key is not RSA")
    return key


def load_private_key(value: PrivateKeyLike) -> rsa.RSAPrivateKey:
    if isinstance(value, rsa.RSAPrivateKey):
        return value
    raw, is_pem = _key_bytes(value)
    try:
        if is_pem:
            key = serialization.load_pem_private_key(raw, password=None)
        else:
            key = serialization.load_der_private_key(raw, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError("malformed private key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("private key is not RSA")
    return key


def accept_public_key(value: PublicKeyLike, min_bits: int = MIN_RSA_BITS) -> bool:
    """True when value is a usable RSA wrapping key of at least min_bits."""
    try:
        key = load_public_key(value)
    except ValueError:
        return False
    return key.key_size >= min_bits


# ---------------------------------------------------------------------------
# Envelope encryption
# ---------------------------------------------------------------------------

def encrypt(plaintext: bytes, receiver_public_key: PublicKeyLike) -> EncryptedEnvelope:
    """Seal plaintext for the holder of receiver_public_key."""
    if not isinstance(plaintext, (bytes, bytearray)):
        raise TypeError("plaintext must be bytes")
    try:
        pub = load_public_key(receiver_public_key)
    except ValueError as exc:
        raise EncryptionError(str(exc)) from exc

    key = AESGCM.generate_key(bit_length=AES_KEY_BITS)
    iv = os.urandom(IV_BYTES)
    ciphertext = AESGCM(key).encrypt(iv, bytes(plaintext), None)  # ct || tag
    try:
        wrapped = pub.encrypt(key, _oaep())
    except ValueError as exc:
        raise EncryptionError("public key cannot wrap a 256-bit key") from exc

    return EncryptedEnvelope(ciphertext=b64(ciphertext), wrapped_key=b64(wrapped), iv=b64(iv))


def decrypt(envelope: EncryptedEnvelope, own_private_key: PrivateKeyLike) -> bytes:
    """Open an envelope with our private key.

    Raises DecryptionError if the key was wrapped for someone else, the tag does
    not verify, or any field is malformed.
    """
    try:
        priv = load_private_key(own_private_key)
    except ValueError as exc:
        raise DecryptionError(str(exc)) from exc

    try:
        ciphertext = b64d(envelope.ciphertext)
        wrapped = b64d(envelope.wrapped_key)
        iv = b64d(envelope.iv)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("malformed envelope field") from exc
    if len(iv) != IV_BYTES:
        raise DecryptionError("iv must be 96 bits")

    try:
        key = priv.decrypt(wrapped, _oaep())
    except ValueError as exc:
        raise DecryptionError("wrapped key does not open under this private key") from exc
    if len(key) != AES_KEY_BITS // 8:
        raise DecryptionError("unwrapped key has the wrong length")

    try:
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError("authentication tag mismatch") from exc


__all__ = [
    "CryptoError",
    "EncryptionError",
    "DecryptionError",
    "KeyPair",
    "generate_key_pair",
    "load_public_key",
    "load_private_key",
    "accept_public_key",
    "encrypt",
    "decrypt",
    "b64",
    "b64d",
]
