"""
Neurai address and script utilities.

Neurai uses legacy base58check addresses: P2PKH ("N..." on mainnet) and
P2SH. Segwit is not active on the chain.
"""

from __future__ import annotations

import hashlib

import base58

OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D


class AddressError(ValueError):
    pass


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def decode_address(address: str) -> tuple[int, bytes]:
    """Decode a base58check address into (version, 20-byte payload)."""
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise AddressError(f"Invalid base58check address: {address}") from e

    if len(decoded) != 21:
        raise AddressError(f"Invalid address payload length: {len(decoded) - 1}")
    return decoded[0], decoded[1:]


def encode_address(version: int, payload: bytes) -> str:
    if len(payload) != 20:
        raise AddressError(f"Invalid address payload length: {len(payload)}")
    return base58.b58encode_check(bytes([version]) + payload).decode("ascii")


def pubkey_to_p2pkh_address(pubkey: bytes, version: int) -> str:
    if len(pubkey) != 33:
        raise AddressError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return encode_address(version, hash160(pubkey))


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    """OP_HASH160 <20-byte-hash> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def p2pkh_hash_from_script(script: bytes) -> bytes | None:
    """Return the pubkey hash of a P2PKH script, or None for any other script."""
    if (
        len(script) == 25
        and script[0] == OP_DUP
        and script[1] == OP_HASH160
        and script[2] == 0x14
        and script[23] == OP_EQUALVERIFY
        and script[24] == OP_CHECKSIG
    ):
        return script[3:23]
    return None


def address_to_scriptpubkey(address: str, pubkey_version: int, script_version: int) -> bytes:
    version, payload = decode_address(address)
    if version == pubkey_version:
        return p2pkh_script(payload)
    if version == script_version:
        return p2sh_script(payload)
    raise AddressError(f"Unknown address version: {version}")


def push_data(data: bytes) -> bytes:
    """Minimal script push of data."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    raise ValueError("Push data too large")


def p2pkh_script_sig(signature: bytes, pubkey: bytes) -> bytes:
    return push_data(signature) + push_data(pubkey)
