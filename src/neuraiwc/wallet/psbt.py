"""
BIP174 (version 0) PSBT codec.

Known per-input fields are parsed into typed attributes; every other key is
kept verbatim so a decode/encode cycle never drops data another signer or
coordinator placed in the PSBT.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field

from neuraiwc.wallet.transaction import (
    Transaction,
    TransactionError,
    TxInput,
    TxOutput,
    deserialize_transaction,
    encode_varint,
    read_varint,
    serialize_transaction,
    transaction_id,
)

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_VERSION = 0xFB

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

SUPPORTED_PSBT_VERSION = 0


class PsbtError(Exception):
    pass


KeyValueMap = dict[bytes, bytes]


@dataclass
class PsbtInput:
    non_witness_utxo: bytes | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)  # pubkey -> sig
    sighash_type: int | None = None
    bip32_derivations: dict[bytes, bytes] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: bytes | None = None
    unknown: KeyValueMap = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def prevout(self, vout: int, txid: str) -> TxOutput | None:
        """
        The spent output as recorded in this input's utxo fields.

        A non-witness utxo is only trusted when its txid matches the outpoint.
        """
        if self.non_witness_utxo is not None:
            prev_tx = deserialize_transaction(self.non_witness_utxo)
            if transaction_id(prev_tx) != txid:
                raise PsbtError(f"Non-witness utxo txid does not match outpoint {txid}")
            if vout >= len(prev_tx.outputs):
                raise PsbtError(f"Non-witness utxo has no output {vout}")
            return prev_tx.outputs[vout]
        return self.witness_utxo


@dataclass
class PsbtOutput:
    fields: KeyValueMap = field(default_factory=dict)


@dataclass
class Psbt:
    tx: Transaction
    inputs: list[PsbtInput]
    outputs: list[PsbtOutput]
    version: int | None = None
    unknown: KeyValueMap = field(default_factory=dict)

    @classmethod
    def create(cls, tx: Transaction) -> Psbt:
        """Wrap an unsigned transaction in an empty PSBT."""
        if any(inp.script_sig for inp in tx.inputs) or tx.has_witness:
            raise PsbtError("Unsigned transaction must have empty scriptSigs and witnesses")
        return cls(
            tx=tx,
            inputs=[PsbtInput() for _ in tx.inputs],
            outputs=[PsbtOutput() for _ in tx.outputs],
        )

    @classmethod
    def from_base64(cls, data: str) -> Psbt:
        try:
            raw = base64.b64decode(data.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise PsbtError("PSBT is not valid base64") from e
        return cls.from_bytes(raw)

    @classmethod
    def from_bytes(cls, data: bytes) -> Psbt:
        if data[:5] != PSBT_MAGIC:
            raise PsbtError("Not a PSBT (bad magic)")

        try:
            global_map, offset = _read_map(data, 5)

            version = None
            if bytes([PSBT_GLOBAL_VERSION]) in global_map:
                version = int.from_bytes(global_map.pop(bytes([PSBT_GLOBAL_VERSION])), "little")
                if version != SUPPORTED_PSBT_VERSION:
                    raise PsbtError(f"Unsupported PSBT version {version}")

            raw_tx = global_map.pop(bytes([PSBT_GLOBAL_UNSIGNED_TX]), None)
            if raw_tx is None:
                raise PsbtError("Missing unsigned transaction")
            tx = deserialize_transaction(raw_tx)
            if any(inp.script_sig for inp in tx.inputs) or tx.has_witness:
                raise PsbtError("Unsigned transaction has non-empty scriptSig or witness")
            if not tx.inputs:
                raise PsbtError("Unsigned transaction has no inputs")

            inputs = []
            for index in range(len(tx.inputs)):
                input_map, offset = _read_map(data, offset)
                inputs.append(_parse_input(input_map, index))

            outputs = []
            for _ in range(len(tx.outputs)):
                output_map, offset = _read_map(data, offset)
                outputs.append(PsbtOutput(fields=output_map))
        except TransactionError as e:
            raise PsbtError(str(e)) from e

        if offset != len(data):
            raise PsbtError(f"{len(data) - offset} trailing bytes after PSBT maps")

        return cls(tx=tx, inputs=inputs, outputs=outputs, version=version, unknown=global_map)

    def to_bytes(self) -> bytes:
        buf = PSBT_MAGIC
        buf += _kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]), serialize_transaction(self.tx, False))
        if self.version is not None:
            buf += _kv(bytes([PSBT_GLOBAL_VERSION]), self.version.to_bytes(4, "little"))
        for key, value in self.unknown.items():
            buf += _kv(key, value)
        buf += b"\x00"

        for inp in self.inputs:
            buf += _serialize_input(inp)
            buf += b"\x00"

        for out in self.outputs:
            for key, value in out.fields.items():
                buf += _kv(key, value)
            buf += b"\x00"

        return buf

    def to_base64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    def extract(self) -> Transaction:
        """Build the network transaction from finalized inputs."""
        missing = [i for i, inp in enumerate(self.inputs) if not inp.is_finalized]
        if missing:
            raise PsbtError(f"Inputs not finalized: {missing}")

        tx_inputs = []
        witnesses = []
        for tx_in, psbt_in in zip(self.tx.inputs, self.inputs, strict=True):
            script_sig = psbt_in.final_script_sig or b""
            tx_inputs.append(TxInput(tx_in.txid_le, tx_in.vout, script_sig, tx_in.sequence))
            witnesses.append(_parse_witness(psbt_in.final_script_witness))

        return Transaction(
            self.tx.version,
            tx_inputs,
            list(self.tx.outputs),
            self.tx.locktime,
            witnesses if any(witnesses) else [],
        )


def _kv(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _read_map(data: bytes, offset: int) -> tuple[KeyValueMap, int]:
    """Read one key-value map up to its 0x00 separator."""
    result: KeyValueMap = {}
    while True:
        if offset >= len(data):
            raise PsbtError("Unexpected end of PSBT (missing map separator)")
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return result, offset
        if offset + key_len > len(data):
            raise PsbtError("Truncated PSBT key")
        key = data[offset : offset + key_len]
        offset += key_len

        value_len, offset = read_varint(data, offset)
        if offset + value_len > len(data):
            raise PsbtError("Truncated PSBT value")
        value = data[offset : offset + value_len]
        offset += value_len

        if key in result:
            raise PsbtError(f"Duplicate PSBT key {key.hex()}")
        result[key] = value


def _parse_witness_utxo(value: bytes) -> TxOutput:
    if len(value) < 9:
        raise PsbtError("Witness utxo too short")
    amount = int.from_bytes(value[:8], "little")
    script_len, offset = read_varint(value, 8)
    if offset + script_len != len(value):
        raise PsbtError("Witness utxo script length mismatch")
    return TxOutput(amount, value[offset:])


def _parse_input(fields: KeyValueMap, index: int) -> PsbtInput:
    inp = PsbtInput()
    for key, value in fields.items():
        key_type = key[0]
        keydata = key[1:]

        if key_type == PSBT_IN_NON_WITNESS_UTXO and not keydata:
            inp.non_witness_utxo = value
        elif key_type == PSBT_IN_WITNESS_UTXO and not keydata:
            inp.witness_utxo = _parse_witness_utxo(value)
        elif key_type == PSBT_IN_PARTIAL_SIG:
            if len(keydata) not in (33, 65):
                raise PsbtError(f"Input {index}: invalid partial signature pubkey")
            inp.partial_sigs[keydata] = value
        elif key_type == PSBT_IN_SIGHASH_TYPE and not keydata:
            if len(value) != 4:
                raise PsbtError(f"Input {index}: invalid sighash type")
            inp.sighash_type = int.from_bytes(value, "little")
        elif key_type == PSBT_IN_BIP32_DERIVATION:
            inp.bip32_derivations[keydata] = value
        elif key_type == PSBT_IN_FINAL_SCRIPTSIG and not keydata:
            inp.final_script_sig = value
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and not keydata:
            inp.final_script_witness = value
        else:
            inp.unknown[key] = value
    return inp


def _serialize_input(inp: PsbtInput) -> bytes:
    buf = b""
    if inp.non_witness_utxo is not None:
        buf += _kv(bytes([PSBT_IN_NON_WITNESS_UTXO]), inp.non_witness_utxo)
    if inp.witness_utxo is not None:
        script = inp.witness_utxo.script
        value = inp.witness_utxo.value.to_bytes(8, "little") + encode_varint(len(script)) + script
        buf += _kv(bytes([PSBT_IN_WITNESS_UTXO]), value)
    for pubkey, sig in inp.partial_sigs.items():
        buf += _kv(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
    if inp.sighash_type is not None:
        buf += _kv(bytes([PSBT_IN_SIGHASH_TYPE]), inp.sighash_type.to_bytes(4, "little"))
    for pubkey, origin in inp.bip32_derivations.items():
        buf += _kv(bytes([PSBT_IN_BIP32_DERIVATION]) + pubkey, origin)
    if inp.final_script_sig is not None:
        buf += _kv(bytes([PSBT_IN_FINAL_SCRIPTSIG]), inp.final_script_sig)
    if inp.final_script_witness is not None:
        buf += _kv(bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), inp.final_script_witness)
    for key, value in inp.unknown.items():
        buf += _kv(key, value)
    return buf


def _parse_witness(raw: bytes | None) -> list[bytes]:
    if not raw:
        return []
    count, offset = read_varint(raw, 0)
    items = []
    for _ in range(count):
        length, offset = read_varint(raw, offset)
        items.append(raw[offset : offset + length])
        offset += length
    return items
