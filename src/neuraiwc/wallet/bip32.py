"""
BIP32 key derivation used by the in-process custody implementation.
"""

from __future__ import annotations

import hashlib
import hmac
import unicodedata
from dataclasses import dataclass

from coincurve import PrivateKey

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000


def parse_path(path: str) -> list[int]:
    """
    Parse "m/44'/1900'/0'/0/3" into child indexes.
    ' or h marks hardened derivation.
    """
    parts = path.split("/")
    if not parts or parts[0] != "m":
        raise ValueError(f"Path must start with 'm': {path}")

    indexes = []
    for part in parts[1:]:
        if not part:
            raise ValueError(f"Empty path component in {path}")
        hardened = part[-1] in ("'", "h")
        digits = part[:-1] if hardened else part
        if not digits.isdigit():
            raise ValueError(f"Invalid path component '{part}' in {path}")
        index = int(digits)
        if index >= HARDENED_OFFSET:
            raise ValueError(f"Path index out of range: {part}")
        indexes.append(index + HARDENED_OFFSET if hardened else index)
    return indexes


@dataclass(frozen=True)
class ExtendedPrivateKey:
    private_key: PrivateKey
    chain_code: bytes
    depth: int = 0

    @classmethod
    def from_seed(cls, seed: bytes) -> ExtendedPrivateKey:
        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(digest[:32]), digest[32:], 0)

    @property
    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key.format(compressed=True)

    def child(self, index: int) -> ExtendedPrivateKey:
        if index >= HARDENED_OFFSET:
            data = b"\x00" + self.private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.public_key_bytes + index.to_bytes(4, "big")

        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        offset = int.from_bytes(digest[:32], "big")
        if offset >= SECP256K1_N:
            raise ValueError(f"Invalid child key at index {index}")

        child_int = (int.from_bytes(self.private_key.secret, "big") + offset) % SECP256K1_N
        if child_int == 0:
            raise ValueError(f"Invalid child key at index {index}")

        return ExtendedPrivateKey(
            PrivateKey(child_int.to_bytes(32, "big")), digest[32:], self.depth + 1
        )

    def derive(self, path: str) -> ExtendedPrivateKey:
        key = self
        for index in parse_path(path):
            key = key.child(index)
        return key


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """BIP39 seed from mnemonic (no wordlist checksum validation)."""
    normalized = unicodedata.normalize("NFKD", " ".join(mnemonic.split()))
    salt = unicodedata.normalize("NFKD", "mnemonic" + passphrase)
    return hashlib.pbkdf2_hmac("sha512", normalized.encode("utf-8"), salt.encode("utf-8"), 2048)
