"""Key derivation, packet ciphers and checksum validation for lite server links."""

from __future__ import annotations

import hashlib
import hmac
from typing import Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers import Cipher, CipherContext, algorithms, modes

_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P
_KEY_ID_MAGIC = bytes([0xC6, 0xB4, 0x13, 0x48])

PrivateKeyLike = Union[bytes, bytearray, Ed25519PrivateKey]


class PacketError(ValueError):
    """Raised when a received packet is malformed or fails its checksum."""


def key_id(key: bytes) -> bytes:
    """Identifier of a public key as used in the handshake."""
    if len(key) != 32:
        raise ValueError("key not 32 bytes")
    return hashlib.sha256(_KEY_ID_MAGIC + bytes(key)).digest()


def _seed_of(our_key: PrivateKeyLike) -> bytes:
    if isinstance(our_key, Ed25519PrivateKey):
        return our_key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )
    raw = bytes(our_key)
    if len(raw) not in (32, 64):
        raise ValueError("private key must be a 32-byte seed or 64-byte key")
    return raw[:32]


def _edwards_to_montgomery(public: bytes) -> bytes:
    if len(public) != 32:
        raise ValueError("public key not 32 bytes")
    y = int.from_bytes(public, "little") & ((1 << 255) - 1)
    if y >= _P:
        raise ValueError("invalid Edwards point encoding")
    y2 = y * y % _P
    x2 = (y2 - 1) * pow(_D * y2 + 1, _P - 2, _P) % _P
    if x2 != 0 and pow(x2, (_P - 1) // 2, _P) != 1:
        raise ValueError("invalid Edwards point encoding")
    u = (1 + y) * pow((1 - y) % _P, _P - 2, _P) % _P
    return u.to_bytes(32, "little")


def shared_key(our_key: PrivateKeyLike, server_key: bytes) -> bytes:
    """ECDH secret from our Ed25519 private key and the server's Ed25519 public key."""
    digest = bytearray(hashlib.sha512(_seed_of(our_key)).digest()[:32])
    digest[0] &= 248
    digest[31] &= 127
    digest[31] |= 64
    private = X25519PrivateKey.from_private_bytes(bytes(digest))
    public = X25519PublicKey.from_public_bytes(_edwards_to_montgomery(bytes(server_key)))
    try:
        return private.exchange(public)
    except ValueError as exc:
        raise ValueError("bad input point: low order point") from exc


def new_cipher_ctr(key: bytes, iv: bytes) -> CipherContext:
    """AES-CTR keystream; call update() to encrypt or decrypt."""
    if len(iv) != 16:
        raise ValueError("IV length must equal block size")
    return Cipher(algorithms.AES(bytes(key)), modes.CTR(bytes(iv))).encryptor()


def validate_packet(data: bytes, checksum: bytes) -> None:
    """Check that checksum is the SHA-256 of data; raise PacketError otherwise."""
    if len(data) < 32:
        raise PacketError("too small packet")
    if not hmac.compare_digest(hashlib.sha256(bytes(data)).digest(), bytes(checksum)):
        raise PacketError("checksum packet")