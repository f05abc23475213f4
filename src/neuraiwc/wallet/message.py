"""
Neurai signed-message support.

Signatures use the Bitcoin compact recoverable format:
base64(header || r || s) with header = 27 + recovery_id + 4 (compressed key),
over hash256(varint(len(magic)) || magic || varint(len(msg)) || msg).
"""

from __future__ import annotations

import base64
import binascii

from coincurve import PublicKey

from neuraiwc.wallet.address import decode_address, hash160
from neuraiwc.wallet.transaction import encode_varint, hash256

COMPACT_HEADER_BASE = 27
COMPRESSED_FLAG = 4


class MessageSignatureError(ValueError):
    pass


def message_hash(message: str, magic: str) -> bytes:
    magic_bytes = magic.encode("utf-8")
    msg_bytes = message.encode("utf-8")
    return hash256(
        encode_varint(len(magic_bytes)) + magic_bytes + encode_varint(len(msg_bytes)) + msg_bytes
    )


def der_to_rs(der: bytes) -> tuple[int, int]:
    """Extract (r, s) from a strict DER ECDSA signature."""
    if len(der) < 8 or der[0] != 0x30 or der[1] != len(der) - 2:
        raise MessageSignatureError("Invalid DER signature framing")

    values = []
    offset = 2
    for _ in range(2):
        if offset + 2 > len(der) or der[offset] != 0x02:
            raise MessageSignatureError("Invalid DER integer marker")
        length = der[offset + 1]
        offset += 2
        if length == 0 or offset + length > len(der):
            raise MessageSignatureError("Invalid DER integer length")
        values.append(int.from_bytes(der[offset : offset + length], "big"))
        offset += length

    if offset != len(der):
        raise MessageSignatureError("Trailing bytes in DER signature")
    return values[0], values[1]


def recover_compact_signature(der: bytes, digest: bytes, public_key: bytes) -> bytes:
    """
    Turn a DER signature into a 65-byte compact recoverable signature.

    The recovery id is found by trying each candidate and comparing the
    recovered key with the expected public key.
    """
    r, s = der_to_rs(der)
    rs = r.to_bytes(32, "big") + s.to_bytes(32, "big")
    for recovery_id in range(4):
        try:
            candidate = PublicKey.from_signature_and_message(
                rs + bytes([recovery_id]), digest, hasher=None
            )
        except Exception:
            continue
        if candidate.format(compressed=True) == public_key:
            header = COMPACT_HEADER_BASE + recovery_id + COMPRESSED_FLAG
            return bytes([header]) + rs
    raise MessageSignatureError("Signature does not match public key")


def recover_message_pubkey(message: str, signature_b64: str, magic: str) -> bytes:
    try:
        raw = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MessageSignatureError("Signature is not valid base64") from e
    if len(raw) != 65:
        raise MessageSignatureError(f"Compact signature must be 65 bytes, got {len(raw)}")

    header = raw[0]
    if not COMPACT_HEADER_BASE <= header < COMPACT_HEADER_BASE + 8:
        raise MessageSignatureError(f"Invalid signature header byte: {header}")
    recovery_id = (header - COMPACT_HEADER_BASE) & 3
    compressed = header - COMPACT_HEADER_BASE >= COMPRESSED_FLAG

    try:
        pubkey = PublicKey.from_signature_and_message(
            raw[1:] + bytes([recovery_id]), message_hash(message, magic), hasher=None
        )
    except Exception as e:
        raise MessageSignatureError(f"Public key recovery failed: {e}") from e
    return pubkey.format(compressed=compressed)


def verify_message(address: str, message: str, signature_b64: str, magic: str) -> bool:
    try:
        pubkey = recover_message_pubkey(message, signature_b64, magic)
        _, payload = decode_address(address)
    except ValueError:
        return False
    return hash160(pubkey) == payload
