from __future__ import annotations

import base64
import io
import struct
from typing import BinaryIO, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from autoupdater.common.errors import TrustError


ENVELOPE_MAGIC = b"AUSIG1"
SIGNATURE_SIZE = 64
_LENGTH = struct.Struct(">H")
_HEADER_SIZE = len(ENVELOPE_MAGIC) + _LENGTH.size

PrivateKeyLike = Union[Ed25519PrivateKey, str, bytes]
PublicKeyLike = Union[Ed25519PublicKey, str, bytes]


def _key_text(value: str | bytes) -> str:
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return str(value or "").strip()


def load_private_key(value: PrivateKeyLike) -> Ed25519PrivateKey:
    if isinstance(value, Ed25519PrivateKey):
        return value
    text = _key_text(value)
    if not text:
        raise ValueError("Signing key is empty.")

    if text.startswith("-----BEGIN"):
        key = serialization.load_pem_private_key(text.encode("utf-8"), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError("Signing key must be an Ed25519 private key.")
        return key

    try:
        raw = base64.b64decode(text, validate=True)
    except Exception as exc:
        raise ValueError("Signing key must be PEM or base64-encoded raw Ed25519 key.") from exc
    if len(raw) != 32:
        raise ValueError("Base64 signing key must decode to 32 bytes.")
    return Ed25519PrivateKey.from_private_bytes(raw)


def load_public_key(value: PublicKeyLike) -> Ed25519PublicKey:
    if isinstance(value, Ed25519PublicKey):
        return value
    text = _key_text(value)
    if not text:
        raise ValueError("Verification key is empty.")

    if text.startswith("-----BEGIN"):
        key = serialization.load_pem_public_key(text.encode("utf-8"))
        if not isinstance(key, Ed25519PublicKey):
            raise ValueError("Verification key must be an Ed25519 public key.")
        return key

    try:
        raw = base64.b64decode(text, validate=True)
    except Exception as exc:
        raise ValueError("Verification key must be PEM or base64-encoded raw Ed25519 key.") from exc
    if len(raw) != 32:
        raise ValueError("Base64 verification key must decode to 32 bytes.")
    return Ed25519PublicKey.from_public_bytes(raw)


def public_key_text(private_key: PrivateKeyLike) -> str:
    pub = load_private_key(private_key).public_key()
    raw = pub.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)
    return base64.b64encode(raw).decode("ascii")


def generate_key_pair() -> tuple[str, str]:
    key = Ed25519PrivateKey.generate()
    raw = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(raw).decode("ascii"), public_key_text(key)


def _read_all(source: bytes | BinaryIO) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    return source.read()


def seal_bytes(payload: bytes, private_key: PrivateKeyLike) -> bytes:
    signature = load_private_key(private_key).sign(payload)
    return ENVELOPE_MAGIC + _LENGTH.pack(len(signature)) + signature + payload


def seal(plain: bytes | BinaryIO, output: BinaryIO, private_key: PrivateKeyLike) -> None:
    output.write(seal_bytes(_read_all(plain), private_key))


def open_bytes(raw: bytes | BinaryIO, public_key: PublicKeyLike) -> bytes:
    data = _read_all(raw)
    if len(data) < _HEADER_SIZE or not data.startswith(ENVELOPE_MAGIC):
        raise TrustError("Signed stream has no valid signature header.")
    (sig_len,) = _LENGTH.unpack_from(data, len(ENVELOPE_MAGIC))
    if sig_len != SIGNATURE_SIZE:
        raise TrustError(f"Signed stream has unexpected signature length {sig_len}.")
    if len(data) < _HEADER_SIZE + sig_len:
        raise TrustError("Signed stream is truncated.")

    signature = data[_HEADER_SIZE : _HEADER_SIZE + sig_len]
    payload = data[_HEADER_SIZE + sig_len :]
    try:
        load_public_key(public_key).verify(signature, payload)
    except InvalidSignature as exc:
        raise TrustError("Signature verification failed.") from exc
    return payload


def open_signed(raw: bytes | BinaryIO, public_key: PublicKeyLike) -> io.BytesIO:
    return io.BytesIO(open_bytes(raw, public_key))
