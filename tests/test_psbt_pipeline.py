"""
Tests for the PSBT decode -> verify -> sign -> finalize pipeline.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from neuraiwc.errors import (
    IncompleteSignatures,
    MalformedPsbt,
    SigningDenied,
    TransportTimeout,
    UnknownInput,
)
from neuraiwc.psbt_pipeline import PsbtPipeline, PsbtStatus
from neuraiwc.wallet.custody import Custody
from neuraiwc.wallet.transaction import TxOutput, deserialize_transaction, transaction_id


class SlowCustody(Custody):
    """Derives normally but never answers a signing request in time."""

    def __init__(self, inner):
        self.inner = inner

    async def derive(self, path):
        return await self.inner.derive(path)

    async def sign(self, sighash, path):
        await asyncio.sleep(10)


async def verified(pipeline, ledger, accounts, psbt):
    for account in accounts:
        await ledger.refresh(account.account_id)
    session = pipeline.decode(psbt.to_base64())
    pipeline.verify_inputs(session, [a.account_id for a in accounts])
    return session


class TestDecode:
    def test_malformed(self, pipeline):
        with pytest.raises(MalformedPsbt) as exc_info:
            pipeline.decode("cHNidP8=")
        assert exc_info.value.code == 6001
        assert exc_info.value.data["step"] == "decode"

    def test_decoded_session(self, pipeline, fund, build_psbt, wallet_accounts):
        utxo, _ = fund(wallet_accounts[0], 10_000)
        session = pipeline.decode(build_psbt([utxo]).to_base64())
        assert session.status == PsbtStatus.DECODED
        assert [(ref.txid, ref.vout) for ref in session.inputs] == [(utxo.txid, 0)]
        assert session.inputs[0].account_id is None


class TestFullFlow:
    @pytest.mark.asyncio
    async def test_sign_and_finalize(self, pipeline, ledger, fund, build_psbt, wallet_accounts):
        account = wallet_accounts[0]
        utxo, prev_tx = fund(account, 10_000)
        session = await verified(pipeline, ledger, [account], build_psbt([utxo], [prev_tx]))

        assert session.status == PsbtStatus.INPUTS_VERIFIED
        assert session.inputs[0].account_id == account.account_id

        await pipeline.sign(session, account.account_id, [account.account_id])
        assert session.status == PsbtStatus.SIGNED
        signature = session.psbt.inputs[0].partial_sigs[account.public_key]
        assert signature[-1] == 0x01

        raw_hex = pipeline.finalize(session)
        assert session.status == PsbtStatus.FINALIZED

        tx = deserialize_transaction(bytes.fromhex(raw_hex))
        script_sig = tx.inputs[0].script_sig
        sig_len = script_sig[0]
        assert script_sig[1 : 1 + sig_len] == signature
        assert script_sig[1 + sig_len] == 33
        assert script_sig[2 + sig_len :] == account.public_key

        finalized_input = session.psbt.inputs[0]
        assert finalized_input.partial_sigs == {}
        assert finalized_input.non_witness_utxo is not None

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        account = wallet_accounts[0]
        utxo, prev_tx = fund(account, 10_000)
        session = await verified(pipeline, ledger, [account], build_psbt([utxo], [prev_tx]))
        await pipeline.sign(session, account.account_id, [account.account_id])

        first = pipeline.finalize(session)
        encoded = pipeline.encode(session)
        second = pipeline.finalize(session)
        assert first == second
        assert pipeline.encode(session) == encoded

        # A finalized PSBT decoded again finalizes to the same transaction
        again = pipeline.decode(encoded)
        assert pipeline.finalize(again) == first

    @pytest.mark.asyncio
    async def test_finalize_signed_psbt_from_decoded(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        account = wallet_accounts[0]
        utxo, prev_tx = fund(account, 10_000)
        session = await verified(pipeline, ledger, [account], build_psbt([utxo], [prev_tx]))
        await pipeline.sign(session, account.account_id, [account.account_id])

        fresh = pipeline.decode(pipeline.encode(session))
        raw_hex = pipeline.finalize(fresh)
        assert transaction_id(deserialize_transaction(bytes.fromhex(raw_hex)))

    @pytest.mark.asyncio
    async def test_two_accounts_sign_their_own_inputs(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        first, second = wallet_accounts
        utxo_a, prev_a = fund(first, 10_000)
        utxo_b, prev_b = fund(second, 20_000)
        psbt = build_psbt([utxo_a, utxo_b], [prev_a, prev_b])
        authorized = [first.account_id, second.account_id]

        partial = await verified(pipeline, ledger, wallet_accounts, psbt)
        await pipeline.sign(partial, first.account_id, authorized)
        assert list(partial.psbt.inputs[0].partial_sigs) == [first.public_key]
        assert partial.psbt.inputs[1].partial_sigs == {}
        with pytest.raises(IncompleteSignatures) as exc_info:
            pipeline.finalize(partial)
        assert exc_info.value.missing == [1]

        complete = await verified(pipeline, ledger, wallet_accounts, psbt)
        await pipeline.sign(complete, first.account_id, authorized)
        await pipeline.sign(complete, second.account_id, authorized)
        tx = deserialize_transaction(bytes.fromhex(pipeline.finalize(complete)))
        assert all(tx_in.script_sig for tx_in in tx.inputs)


class TestVerifyInputs:
    @pytest.mark.asyncio
    async def test_unknown_input_blocks_signing(
        self, ledger, registry, custody, fund, build_psbt, wallet_accounts
    ):
        spy = AsyncMock(wraps=custody)
        pipeline = PsbtPipeline(ledger, spy, registry)
        account = wallet_accounts[0]
        owned, _ = fund(account, 10_000)
        await ledger.refresh(account.account_id)
        foreign, _ = fund(wallet_accounts[1], 5_000)

        session = pipeline.decode(build_psbt([owned, foreign]).to_base64())
        with pytest.raises(UnknownInput) as exc_info:
            pipeline.verify_inputs(session, [account.account_id])
        assert exc_info.value.input_index == 1
        assert exc_info.value.code == 6002
        assert "input 1" in exc_info.value.message
        assert session.status == PsbtStatus.REJECTED

        with pytest.raises(UnknownInput):
            await pipeline.sign(session, account.account_id, [account.account_id])
        spy.sign.assert_not_called()

    @pytest.mark.asyncio
    async def test_input_of_unauthorized_account(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        utxo, _ = fund(wallet_accounts[0], 10_000)
        await ledger.refresh(wallet_accounts[0].account_id)
        session = pipeline.decode(build_psbt([utxo]).to_base64())
        with pytest.raises(UnknownInput):
            pipeline.verify_inputs(session, [wallet_accounts[1].account_id])

    @pytest.mark.asyncio
    async def test_stale_ledger_entry(
        self, pipeline, ledger, clock, fund, build_psbt, wallet_accounts
    ):
        account = wallet_accounts[0]
        utxo, _ = fund(account, 10_000)
        await ledger.refresh(account.account_id)
        clock.now += 120

        session = pipeline.decode(build_psbt([utxo]).to_base64())
        with pytest.raises(UnknownInput, match="stale"):
            pipeline.verify_inputs(session, [account.account_id])

    @pytest.mark.asyncio
    async def test_embedded_utxo_must_match_ledger(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        account = wallet_accounts[0]
        utxo, _ = fund(account, 10_000)
        await ledger.refresh(account.account_id)

        psbt = build_psbt([utxo])
        psbt.inputs[0].witness_utxo = TxOutput(99_999, bytes.fromhex(utxo.scriptpubkey))
        session = pipeline.decode(psbt.to_base64())
        with pytest.raises(UnknownInput, match="disagrees"):
            pipeline.verify_inputs(session, [account.account_id])


class TestSign:
    @pytest.mark.asyncio
    async def test_unauthorized_account_denied(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        account = wallet_accounts[0]
        utxo, _ = fund(account, 10_000)
        session = await verified(pipeline, ledger, [account], build_psbt([utxo]))
        with pytest.raises(SigningDenied) as exc_info:
            await pipeline.sign(session, account.account_id, [wallet_accounts[1].account_id])
        assert exc_info.value.code == 6004
        assert session.status == PsbtStatus.REJECTED

    @pytest.mark.asyncio
    async def test_account_without_inputs_denied(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        utxo, _ = fund(wallet_accounts[0], 10_000)
        session = await verified(pipeline, ledger, wallet_accounts, build_psbt([utxo]))
        authorized = [a.account_id for a in wallet_accounts]
        with pytest.raises(SigningDenied, match="owns no inputs"):
            await pipeline.sign(session, wallet_accounts[1].account_id, authorized)

    @pytest.mark.asyncio
    async def test_ledger_change_after_verification(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        account = wallet_accounts[0]
        utxo, _ = fund(account, 10_000)
        session = await verified(pipeline, ledger, [account], build_psbt([utxo]))
        await ledger.refresh(account.account_id)

        with pytest.raises(UnknownInput) as exc_info:
            await pipeline.sign(session, account.account_id, [account.account_id])
        assert exc_info.value.failed_step == "sign"

    @pytest.mark.asyncio
    async def test_non_all_sighash_denied(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        account = wallet_accounts[0]
        utxo, _ = fund(account, 10_000)
        psbt = build_psbt([utxo])
        psbt.inputs[0].sighash_type = 0x83
        session = await verified(pipeline, ledger, [account], psbt)
        with pytest.raises(SigningDenied) as exc_info:
            await pipeline.sign(session, account.account_id, [account.account_id])
        assert exc_info.value.input_index == 0

    @pytest.mark.asyncio
    async def test_custody_timeout(
        self, ledger, registry, custody, fund, build_psbt, wallet_accounts
    ):
        pipeline = PsbtPipeline(ledger, SlowCustody(custody), registry, custody_timeout=0.05)
        account = wallet_accounts[0]
        utxo, _ = fund(account, 10_000)
        session = await verified(pipeline, ledger, [account], build_psbt([utxo]))
        with pytest.raises(TransportTimeout):
            await pipeline.sign(session, account.account_id, [account.account_id])
        assert session.status == PsbtStatus.REJECTED
        assert session.psbt.inputs[0].partial_sigs == {}


class TestFinalize:
    def test_unsigned_input_reported(self, pipeline, fund, build_psbt, wallet_accounts):
        utxo, _ = fund(wallet_accounts[0], 10_000)
        session = pipeline.decode(build_psbt([utxo]).to_base64())
        with pytest.raises(IncompleteSignatures) as exc_info:
            pipeline.finalize(session)
        assert exc_info.value.code == 6003
        assert exc_info.value.data["missing"] == [0]
        assert session.status == PsbtStatus.REJECTED

        # Later calls see the same rejection
        with pytest.raises(IncompleteSignatures):
            pipeline.finalize(session)

    @pytest.mark.asyncio
    async def test_invalid_signature_not_accepted(
        self, pipeline, ledger, fund, build_psbt, wallet_accounts
    ):
        account = wallet_accounts[0]
        utxo, _ = fund(account, 10_000)
        session = await verified(pipeline, ledger, [account], build_psbt([utxo]))
        await pipeline.sign(session, account.account_id, [account.account_id])

        # Change an output after signing: the signature no longer commits to the tx
        tampered = pipeline.decode(pipeline.encode(session))
        tampered.psbt.tx.outputs[0].value += 1
        with pytest.raises(IncompleteSignatures):
            pipeline.finalize(tampered)
