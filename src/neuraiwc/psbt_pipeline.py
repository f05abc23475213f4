"""
PSBT signing pipeline.

    decode -> verify_inputs -> sign -> finalize

Each step moves a PsbtSession forward. A failure at any step rejects the
session and the same error is raised again for any later call on it, so a
half-processed PSBT can never be carried on silently.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from coincurve import PublicKey
from loguru import logger

from neuraiwc.accounts import AccountRegistry
from neuraiwc.chain_identity import AccountId
from neuraiwc.errors import (
    IncompleteSignatures,
    MalformedPsbt,
    PsbtPipelineError,
    SigningDenied,
    TransportTimeout,
    UnknownInput,
)
from neuraiwc.ledger import UtxoLedgerView
from neuraiwc.wallet.address import hash160, p2pkh_hash_from_script, p2pkh_script, p2pkh_script_sig
from neuraiwc.wallet.custody import Custody, CustodyError
from neuraiwc.wallet.psbt import Psbt, PsbtError
from neuraiwc.wallet.transaction import (
    SIGHASH_ALL,
    TransactionError,
    compute_sighash_legacy,
    serialize_transaction,
)

SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class PsbtStatus(str, Enum):
    DECODED = "decoded"
    INPUTS_VERIFIED = "inputs_verified"
    SIGNED = "signed"
    FINALIZED = "finalized"
    REJECTED = "rejected"


@dataclass(frozen=True)
class InputRef:
    """An input by outpoint, and the account whose ledger entry it resolved to."""

    index: int
    txid: str
    vout: int
    account_id: AccountId | None = None


@dataclass
class PsbtSession:
    id: str
    raw_base64: str
    psbt: Psbt
    inputs: list[InputRef]
    status: PsbtStatus = PsbtStatus.DECODED
    # Ledger generation per account at verification time
    generations: dict[AccountId, int] = field(default_factory=dict)
    raw_hex: str | None = None
    rejection: PsbtPipelineError | None = None


class PsbtPipeline:
    def __init__(
        self,
        ledger: UtxoLedgerView,
        custody: Custody,
        accounts: AccountRegistry,
        custody_timeout: float = 30.0,
    ):
        self.ledger = ledger
        self.custody = custody
        self.accounts = accounts
        self.custody_timeout = custody_timeout

    def _reject(self, session: PsbtSession, error: PsbtPipelineError) -> PsbtPipelineError:
        session.status = PsbtStatus.REJECTED
        session.rejection = error
        logger.warning(f"PSBT {session.id} rejected: {error.message}")
        return error

    def _require(self, session: PsbtSession, step: str, *allowed: PsbtStatus) -> None:
        if session.status == PsbtStatus.REJECTED and session.rejection is not None:
            raise session.rejection
        if session.status not in allowed:
            raise PsbtPipelineError(f"not allowed in state {session.status.value}", step=step)

    def decode(self, psbt_base64: str) -> PsbtSession:
        try:
            psbt = Psbt.from_base64(psbt_base64)
        except (PsbtError, TransactionError) as e:
            raise MalformedPsbt(str(e)) from e

        inputs = [
            InputRef(index=i, txid=tx_in.txid, vout=tx_in.vout)
            for i, tx_in in enumerate(psbt.tx.inputs)
        ]
        session = PsbtSession(
            id=uuid.uuid4().hex[:16], raw_base64=psbt_base64, psbt=psbt, inputs=inputs
        )
        logger.debug(
            f"Decoded PSBT {session.id}: {len(psbt.tx.inputs)} inputs, "
            f"{len(psbt.tx.outputs)} outputs"
        )
        if SENSITIVE_LOGGING:
            logger.debug(f"PSBT {session.id} contents: {psbt_base64}")
        return session

    def verify_inputs(self, session: PsbtSession, authorized: Iterable[AccountId]) -> None:
        """
        Resolve every input to a fresh ledger UTXO owned by an authorized account.

        Any embedded utxo record must agree with the ledger on value and script.
        """
        self._require(
            session, "verify_inputs", PsbtStatus.DECODED, PsbtStatus.INPUTS_VERIFIED
        )
        authorized = list(authorized)

        refs = []
        generations: dict[AccountId, int] = {}
        for ref in session.inputs:
            found = self.ledger.lookup(ref.txid, ref.vout, authorized)
            if found is None:
                raise self._reject(
                    session,
                    UnknownInput(
                        f"{ref.txid}:{ref.vout} is not an unspent output of an authorized account",
                        input_index=ref.index,
                    ),
                )
            account_id, utxo = found

            if self.ledger.is_stale(account_id):
                raise self._reject(
                    session, UnknownInput("ledger entry is stale", input_index=ref.index)
                )
            if not self.ledger.verify_ownership(utxo, account_id):
                raise self._reject(
                    session,
                    UnknownInput("output script does not match account", input_index=ref.index),
                )

            try:
                prevout = session.psbt.inputs[ref.index].prevout(ref.vout, ref.txid)
            except (PsbtError, TransactionError) as e:
                raise self._reject(
                    session, UnknownInput(f"invalid utxo record: {e}", input_index=ref.index)
                ) from e
            if prevout is not None and (
                prevout.value != utxo.value or prevout.script.hex() != utxo.scriptpubkey.lower()
            ):
                raise self._reject(
                    session,
                    UnknownInput("utxo record disagrees with ledger", input_index=ref.index),
                )

            refs.append(InputRef(ref.index, ref.txid, ref.vout, account_id))
            generations[account_id] = self.ledger.generation(account_id)

        session.inputs = refs
        session.generations = generations
        session.status = PsbtStatus.INPUTS_VERIFIED
        logger.debug(f"PSBT {session.id}: verified {len(refs)} inputs")

    async def sign(
        self, session: PsbtSession, account_id: AccountId, authorized: Iterable[AccountId]
    ) -> None:
        """Add partial signatures for every input owned by account_id."""
        self._require(session, "sign", PsbtStatus.INPUTS_VERIFIED, PsbtStatus.SIGNED)

        if account_id not in set(authorized):
            raise self._reject(session, SigningDenied(f"{account_id} is not authorized"))
        account = self.accounts.get(account_id)
        if account is None:
            raise self._reject(session, SigningDenied(f"{account_id} is not a wallet account"))

        owned = [ref for ref in session.inputs if ref.account_id == account_id]
        if not owned:
            raise self._reject(session, SigningDenied(f"{account_id} owns no inputs"))

        for verified_account, generation in session.generations.items():
            if self.ledger.generation(verified_account) != generation:
                raise self._reject(
                    session,
                    UnknownInput("UTXO set changed since verification", step="sign"),
                )

        signatures: dict[int, tuple[bytes, bytes]] = {}
        for ref in owned:
            psbt_in = session.psbt.inputs[ref.index]
            if psbt_in.is_finalized:
                continue
            if psbt_in.sighash_type not in (None, SIGHASH_ALL):
                raise self._reject(
                    session,
                    SigningDenied(
                        f"sighash type {psbt_in.sighash_type:#x} not allowed",
                        input_index=ref.index,
                    ),
                )

            found = self.ledger.lookup(ref.txid, ref.vout, [account_id])
            if found is None:
                raise self._reject(
                    session,
                    UnknownInput("input left the ledger", input_index=ref.index, step="sign"),
                )
            script_code = bytes.fromhex(found[1].scriptpubkey)
            pubkey_hash = p2pkh_hash_from_script(script_code)
            if pubkey_hash is None:
                raise self._reject(
                    session, SigningDenied("input is not P2PKH", input_index=ref.index)
                )

            try:
                handle = await asyncio.wait_for(
                    self.custody.derive(account.path), self.custody_timeout
                )
                if hash160(handle.public_key) != pubkey_hash:
                    raise self._reject(
                        session,
                        SigningDenied(
                            "derived key does not match input script", input_index=ref.index
                        ),
                    )
                sighash = compute_sighash_legacy(session.psbt.tx, ref.index, script_code)
                der = await asyncio.wait_for(
                    self.custody.sign(sighash, account.path), self.custody_timeout
                )
            except asyncio.TimeoutError as e:
                self._reject(session, SigningDenied("custody timed out", input_index=ref.index))
                raise TransportTimeout(
                    f"Custody did not answer within {self.custody_timeout}s"
                ) from e
            except CustodyError as e:
                raise self._reject(
                    session, SigningDenied(f"custody refused: {e}", input_index=ref.index)
                ) from e

            signatures[ref.index] = (handle.public_key, der + bytes([SIGHASH_ALL]))

        for index, (public_key, signature) in signatures.items():
            session.psbt.inputs[index].partial_sigs[public_key] = signature

        session.status = PsbtStatus.SIGNED
        logger.info(f"PSBT {session.id}: signed {len(signatures)} input(s)")

    def _valid_signature(self, session: PsbtSession, index: int) -> tuple[bytes, bytes] | None:
        """Return the first partial signature that verifies for input index."""
        psbt_in = session.psbt.inputs[index]
        tx_in = session.psbt.tx.inputs[index]
        try:
            prevout = psbt_in.prevout(tx_in.vout, tx_in.txid)
        except (PsbtError, TransactionError):
            return None

        for public_key, signature in psbt_in.partial_sigs.items():
            if not signature or signature[-1] != SIGHASH_ALL:
                continue
            # For P2PKH the script code is implied by the key
            script_code = p2pkh_script(hash160(public_key))
            if prevout is not None and prevout.script != script_code:
                continue
            sighash = compute_sighash_legacy(session.psbt.tx, index, script_code)
            try:
                if PublicKey(public_key).verify(signature[:-1], sighash, hasher=None):
                    return public_key, signature
            except (ValueError, TypeError):
                continue
        return None

    def finalize(self, session: PsbtSession) -> str:
        """
        Build final scriptSigs and return the network transaction hex.

        Calling finalize again on a finalized session returns the same hex.
        """
        if session.status == PsbtStatus.FINALIZED and session.raw_hex is not None:
            return session.raw_hex
        self._require(
            session,
            "finalize",
            PsbtStatus.DECODED,
            PsbtStatus.INPUTS_VERIFIED,
            PsbtStatus.SIGNED,
        )

        script_sigs: dict[int, bytes] = {}
        missing = []
        for index, psbt_in in enumerate(session.psbt.inputs):
            if psbt_in.is_finalized:
                continue
            valid = self._valid_signature(session, index)
            if valid is None:
                missing.append(index)
                continue
            public_key, signature = valid
            script_sigs[index] = p2pkh_script_sig(signature, public_key)

        if missing:
            raise self._reject(
                session,
                IncompleteSignatures(f"no valid signature for inputs {missing}", missing=missing),
            )

        for index, script_sig in script_sigs.items():
            psbt_in = session.psbt.inputs[index]
            psbt_in.final_script_sig = script_sig
            psbt_in.partial_sigs = {}
            psbt_in.sighash_type = None
            psbt_in.bip32_derivations = {}

        try:
            tx = session.psbt.extract()
        except PsbtError as e:
            raise self._reject(session, IncompleteSignatures(str(e))) from e

        session.raw_hex = serialize_transaction(tx).hex()
        session.status = PsbtStatus.FINALIZED
        logger.info(f"PSBT {session.id}: finalized")
        return session.raw_hex

    def encode(self, session: PsbtSession) -> str:
        return session.psbt.to_base64()
