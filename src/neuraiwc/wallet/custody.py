"""
Secret custody interface.

The bridge never holds private keys. Everything it needs from key material
goes through a Custody implementation: derive a public key for a path, and
sign a 32-byte digest with the key at a path.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from loguru import logger

from neuraiwc.wallet.bip32 import ExtendedPrivateKey, mnemonic_to_seed


class CustodyError(Exception):
    pass


@dataclass(frozen=True)
class PublicKeyHandle:
    path: str
    public_key: bytes  # 33-byte compressed SEC1


class Custody(ABC):
    @abstractmethod
    async def derive(self, path: str) -> PublicKeyHandle:
        """Derive the public key at a BIP32 path"""

    @abstractmethod
    async def sign(self, sighash: bytes, path: str) -> bytes:
        """Sign a 32-byte digest, returning a DER-encoded low-S ECDSA signature"""


class HDCustody(Custody):
    """
    In-process BIP32 custody backed by a BIP39 mnemonic.

    Derived keys are cached by path; the cache lives only in this object.
    """

    def __init__(self, mnemonic: str, passphrase: str = ""):
        self._master = ExtendedPrivateKey.from_seed(mnemonic_to_seed(mnemonic, passphrase))
        self._keys: dict[str, ExtendedPrivateKey] = {}

    def _key(self, path: str) -> ExtendedPrivateKey:
        key = self._keys.get(path)
        if key is None:
            try:
                key = self._master.derive(path)
            except ValueError as e:
                raise CustodyError(f"Cannot derive {path}: {e}") from e
            self._keys[path] = key
        return key

    async def derive(self, path: str) -> PublicKeyHandle:
        return PublicKeyHandle(path=path, public_key=self._key(path).public_key_bytes)

    async def sign(self, sighash: bytes, path: str) -> bytes:
        if len(sighash) != 32:
            raise CustodyError(f"Sighash must be 32 bytes, got {len(sighash)}")
        logger.trace(f"Signing digest with key at {path}")
        # Digest is already hashed, skip coincurve's sha256
        return self._key(path).private_key.sign(sighash, hasher=None)
