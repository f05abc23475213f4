"""
Transaction serialization and legacy (pre-segwit) signature hashing.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

SIGHASH_ALL = 0x01


class TransactionError(Exception):
    pass


@dataclass
class TxInput:
    txid_le: bytes
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF

    @property
    def txid(self) -> str:
        """txid in RPC (big-endian) hex form"""
        return self.txid_le[::-1].hex()

    @classmethod
    def from_outpoint(cls, txid: str, vout: int, sequence: int = 0xFFFFFFFF) -> TxInput:
        return cls(bytes.fromhex(txid)[::-1], vout, b"", sequence)


@dataclass
class TxOutput:
    value: int
    script: bytes


@dataclass
class Transaction:
    version: int
    inputs: list[TxInput]
    outputs: list[TxOutput]
    locktime: int = 0
    witnesses: list[list[bytes]] = field(default_factory=list)

    @property
    def has_witness(self) -> bool:
        return any(self.witnesses)


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    if offset >= len(data):
        raise TransactionError("Unexpected end of data reading varint")
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + size > len(data):
        raise TransactionError("Unexpected end of data reading varint")
    return int.from_bytes(data[offset : offset + size], "little"), offset + size


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def _take(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    end = offset + size
    if end > len(data):
        raise TransactionError(f"Unexpected end of data: need {size} bytes at offset {offset}")
    return data[offset:end], end


def _read_tx(tx_bytes: bytes, offset: int = 0) -> tuple[Transaction, int]:
    raw, offset = _take(tx_bytes, offset, 4)
    version = int.from_bytes(raw, "little")

    segwit = False
    if offset + 1 < len(tx_bytes) and tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
        segwit = True
        offset += 2

    input_count, offset = read_varint(tx_bytes, offset)
    inputs: list[TxInput] = []
    for _ in range(input_count):
        txid_le, offset = _take(tx_bytes, offset, 32)
        raw, offset = _take(tx_bytes, offset, 4)
        vout = int.from_bytes(raw, "little")
        script_len, offset = read_varint(tx_bytes, offset)
        script, offset = _take(tx_bytes, offset, script_len)
        raw, offset = _take(tx_bytes, offset, 4)
        inputs.append(TxInput(txid_le, vout, script, int.from_bytes(raw, "little")))

    output_count, offset = read_varint(tx_bytes, offset)
    outputs: list[TxOutput] = []
    for _ in range(output_count):
        raw, offset = _take(tx_bytes, offset, 8)
        value = int.from_bytes(raw, "little")
        script_len, offset = read_varint(tx_bytes, offset)
        script, offset = _take(tx_bytes, offset, script_len)
        outputs.append(TxOutput(value, script))

    witnesses: list[list[bytes]] = []
    if segwit:
        for _ in range(input_count):
            stack_count, offset = read_varint(tx_bytes, offset)
            stack = []
            for _ in range(stack_count):
                item_len, offset = read_varint(tx_bytes, offset)
                item, offset = _take(tx_bytes, offset, item_len)
                stack.append(item)
            witnesses.append(stack)

    raw, offset = _take(tx_bytes, offset, 4)
    locktime = int.from_bytes(raw, "little")
    return Transaction(version, inputs, outputs, locktime, witnesses), offset


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    """Parse a complete serialized transaction, rejecting trailing bytes."""
    tx, offset = _read_tx(tx_bytes)
    if offset != len(tx_bytes):
        raise TransactionError(f"{len(tx_bytes) - offset} trailing bytes after transaction")
    return tx


def serialize_transaction(tx: Transaction, include_witness: bool = True) -> bytes:
    segwit = include_witness and tx.has_witness
    result = tx.version.to_bytes(4, "little")
    if segwit:
        result += b"\x00\x01"

    result += encode_varint(len(tx.inputs))
    for inp in tx.inputs:
        result += inp.txid_le + inp.vout.to_bytes(4, "little")
        result += encode_varint(len(inp.script_sig)) + inp.script_sig
        result += inp.sequence.to_bytes(4, "little")

    result += encode_varint(len(tx.outputs))
    for out in tx.outputs:
        result += out.value.to_bytes(8, "little")
        result += encode_varint(len(out.script)) + out.script

    if segwit:
        for stack in tx.witnesses:
            result += encode_varint(len(stack))
            for item in stack:
                result += encode_varint(len(item)) + item

    result += tx.locktime.to_bytes(4, "little")
    return result


def transaction_id(tx: Transaction) -> str:
    return hash256(serialize_transaction(tx, include_witness=False))[::-1].hex()


def compute_sighash_legacy(
    tx: Transaction, input_index: int, script_code: bytes, sighash_type: int = SIGHASH_ALL
) -> bytes:
    """
    Original (pre-BIP143) signature hash.

    Only SIGHASH_ALL is supported: every input and output is committed to.
    """
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise TransactionError(f"Unsupported sighash type: {sighash_type:#x}")

    inputs = [
        TxInput(
            inp.txid_le,
            inp.vout,
            script_code if i == input_index else b"",
            inp.sequence,
        )
        for i, inp in enumerate(tx.inputs)
    ]
    stripped = Transaction(tx.version, inputs, list(tx.outputs), tx.locktime)
    preimage = serialize_transaction(stripped, include_witness=False)
    preimage += sighash_type.to_bytes(4, "little")
    return hash256(preimage)
