"""
Tests for JSON-RPC request dispatch.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from neuraiwc.broadcast import BroadcastService
from neuraiwc.constants import NEURAI_MAINNET_REFERENCE, RpcMethod
from neuraiwc.dispatcher import RequestDispatcher
from neuraiwc.models import Session, SessionNamespace
from neuraiwc.session_store import SessionStore
from neuraiwc.wallet.message import verify_message
from neuraiwc.wallet.transaction import deserialize_transaction, transaction_id

MAINNET_CHAIN = f"bip122:{NEURAI_MAINNET_REFERENCE}"
COIN = 100_000_000


def make_session(accounts, methods=None, topic="topic-1", expiry=None):
    return Session(
        topic=topic,
        namespaces={
            "bip122": SessionNamespace(
                chains=[MAINNET_CHAIN],
                methods=methods if methods is not None else [m.value for m in RpcMethod],
                events=["accountsChanged", "chainChanged"],
                accounts=[str(a.account_id) for a in accounts],
            )
        },
        expiry=expiry,
    )


@pytest.fixture
def store(wallet_accounts):
    store = SessionStore(None)
    store.put(make_session(wallet_accounts[:1]))
    return store


@pytest.fixture
def dispatcher(identity, store, registry, ledger, pipeline, backend, custody):
    return RequestDispatcher(
        identity,
        store,
        registry,
        ledger,
        pipeline,
        BroadcastService(backend, base_delay=0.0),
        custody,
        request_timeout=5.0,
    )


class TestRouting:
    @pytest.mark.asyncio
    async def test_unknown_topic(self, dispatcher):
        response = await dispatcher.handle("nope", "neurai_getAddresses", {}, 1)
        assert response.id == 1
        assert response.error.code == 4100

    @pytest.mark.asyncio
    async def test_unsupported_method(self, dispatcher):
        response = await dispatcher.handle("topic-1", "eth_sendTransaction", {}, 2)
        assert response.error.code == 4200

    @pytest.mark.asyncio
    async def test_method_not_granted(self, dispatcher, store, wallet_accounts):
        store.put(make_session(wallet_accounts[:1], methods=["neurai_getAddresses"], topic="t2"))
        response = await dispatcher.handle("t2", "neurai_signPsbt", {"psbtBase64": "x"}, 3)
        assert response.error.code == 4100

    @pytest.mark.asyncio
    async def test_chain_not_granted(self, dispatcher):
        response = await dispatcher.handle(
            "topic-1", "neurai_getAddresses", {}, 4, chain_id="bip122:" + "ab" * 16
        )
        assert response.error.code == 5100

    @pytest.mark.asyncio
    async def test_malformed_chain(self, dispatcher):
        response = await dispatcher.handle(
            "topic-1", "neurai_getAddresses", {}, 5, chain_id="bip122:zz"
        )
        assert response.error.code == 5201

    @pytest.mark.asyncio
    async def test_invalid_params(self, dispatcher):
        response = await dispatcher.handle("topic-1", "neurai_signPsbt", {}, 6)
        assert response.error.code == -32602
        assert response.error.data["errors"][0]["field"] == "psbtBase64"

        response = await dispatcher.handle("topic-1", "neurai_getAddresses", {"extra": 1}, 7)
        assert response.error.code == -32602

        response = await dispatcher.handle("topic-1", "neurai_getUtxos", "not-an-object", 8)
        assert response.error.code == -32602

    @pytest.mark.asyncio
    async def test_expired_session(self, dispatcher, store, wallet_accounts):
        past = datetime.now(UTC) - timedelta(minutes=1)
        store.put(make_session(wallet_accounts, topic="old", expiry=past))
        response = await dispatcher.handle("old", "neurai_getAddresses", {}, 9)
        assert response.error.code == 4100

    @pytest.mark.asyncio
    async def test_handler_timeout(self, dispatcher):
        async def slow(context, params):
            await asyncio.sleep(10)

        dispatcher.request_timeout = 0.05
        dispatcher._handlers[RpcMethod.GET_ADDRESSES] = slow
        response = await dispatcher.handle("topic-1", "neurai_getAddresses", {}, 10)
        assert response.error.code == 6301

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal_error(self, dispatcher, backend):
        backend.fetch_errors = [RuntimeError("boom")]
        response = await dispatcher.handle("topic-1", "neurai_getUtxos", {}, 11)
        assert response.error.code == -32603
        assert "boom" not in response.error.message

    def test_response_serialization(self):
        from neuraiwc.models import JsonRpcResponse

        ok = JsonRpcResponse.success(1, {"txid": "ab"}).to_dict()
        assert ok == {"id": 1, "jsonrpc": "2.0", "result": {"txid": "ab"}}
        err = JsonRpcResponse.failure(2, {"code": 4100, "message": "no"}).to_dict()
        assert err == {"id": 2, "jsonrpc": "2.0", "error": {"code": 4100, "message": "no"}}


class TestMethods:
    @pytest.mark.asyncio
    async def test_get_addresses_lists_session_accounts(self, dispatcher, wallet_accounts):
        response = await dispatcher.handle("topic-1", "neurai_getAddresses", {}, 1)
        account = wallet_accounts[0]
        assert response.result == [
            {
                "address": account.address,
                "account": str(account.account_id),
                "path": "m/44'/1900'/0'/0/0",
                "publicKey": account.public_key.hex(),
            }
        ]

    @pytest.mark.asyncio
    async def test_get_utxos_with_target(self, dispatcher, fund, wallet_accounts):
        fund(wallet_accounts[0], 2 * COIN)
        fund(wallet_accounts[0], 3 * COIN)
        response = await dispatcher.handle("topic-1", "neurai_getUtxos", {"amount": 3 * COIN}, 1)
        assert response.error is None
        assert response.result["total"] >= 3 * COIN
        assert response.result["target"] == 3 * COIN
        assert len(response.result["utxos"]) <= 2

    @pytest.mark.asyncio
    async def test_get_utxos_lists_everything(self, dispatcher, fund, wallet_accounts):
        fund(wallet_accounts[0], 1000)
        fund(wallet_accounts[0], 2000)
        response = await dispatcher.handle("topic-1", "neurai_getUtxos", None, 1)
        assert sorted(u["value"] for u in response.result) == [1000, 2000]

    @pytest.mark.asyncio
    async def test_get_utxos_insufficient(self, dispatcher, fund, wallet_accounts):
        fund(wallet_accounts[0], 1000)
        response = await dispatcher.handle("topic-1", "neurai_getUtxos", {"amount": 5000}, 1)
        assert response.error.code == 6101

    @pytest.mark.asyncio
    async def test_get_utxos_for_account_outside_session(self, dispatcher, wallet_accounts):
        response = await dispatcher.handle(
            "topic-1", "neurai_getUtxos", {"address": wallet_accounts[1].address}, 1
        )
        assert response.error.code == 4100

    @pytest.mark.asyncio
    async def test_sign_message(self, dispatcher, params, wallet_accounts):
        address = wallet_accounts[0].address
        response = await dispatcher.handle(
            "topic-1", "neurai_signMessage", {"message": "hello", "address": address}, 1
        )
        assert response.result["address"] == address
        assert verify_message(address, "hello", response.result["signature"], params.message_magic)

    @pytest.mark.asyncio
    async def test_sign_message_bad_address(self, dispatcher):
        response = await dispatcher.handle(
            "topic-1", "neurai_signMessage", {"message": "hello", "address": "garbage"}, 1
        )
        assert response.error.code == -32602

    @pytest.mark.asyncio
    async def test_sign_finalize_broadcast(
        self, dispatcher, backend, fund, build_psbt, wallet_accounts
    ):
        utxo, prev_tx = fund(wallet_accounts[0], 50_000)
        psbt_b64 = build_psbt([utxo], [prev_tx], output_value=40_000).to_base64()

        signed = await dispatcher.handle("topic-1", "neurai_signPsbt", {"psbtBase64": psbt_b64}, 1)
        assert signed.error is None
        signed_b64 = signed.result["psbtBase64"]
        assert signed_b64 != psbt_b64

        final = await dispatcher.handle(
            "topic-1", "neurai_finalizePsbt", {"psbtBase64": signed_b64}, 2
        )
        assert final.error is None
        again = await dispatcher.handle(
            "topic-1", "neurai_finalizePsbt", {"psbtBase64": final.result["psbtBase64"]}, 3
        )
        assert again.result["hex"] == final.result["hex"]

        sent = await dispatcher.handle(
            "topic-1", "neurai_broadcastTransaction", {"hex": final.result["hex"]}, 4
        )
        expected = transaction_id(deserialize_transaction(bytes.fromhex(final.result["hex"])))
        assert sent.result == {"txid": expected}
        assert backend.broadcasts == [final.result["hex"]]

    @pytest.mark.asyncio
    async def test_sign_psbt_with_unknown_input(
        self, dispatcher, fund, build_psbt, wallet_accounts
    ):
        foreign, _ = fund(wallet_accounts[1], 50_000)
        psbt_b64 = build_psbt([foreign]).to_base64()
        response = await dispatcher.handle(
            "topic-1", "neurai_signPsbt", {"psbtBase64": psbt_b64}, 1
        )
        assert response.error.code == 6002
        assert response.error.data["input"] == 0

    @pytest.mark.asyncio
    async def test_sign_psbt_malformed(self, dispatcher):
        response = await dispatcher.handle(
            "topic-1", "neurai_signPsbt", {"psbtBase64": "AAAA"}, 1
        )
        assert response.error.code == 6001

    @pytest.mark.asyncio
    async def test_finalize_unsigned(self, dispatcher, fund, build_psbt, wallet_accounts):
        utxo, _ = fund(wallet_accounts[0], 50_000)
        response = await dispatcher.handle(
            "topic-1", "neurai_finalizePsbt", {"psbtBase64": build_psbt([utxo]).to_base64()}, 1
        )
        assert response.error.code == 6003

    @pytest.mark.asyncio
    async def test_broadcast_invalid_hex(self, dispatcher):
        response = await dispatcher.handle(
            "topic-1", "neurai_broadcastTransaction", {"hex": "zz"}, 1
        )
        assert response.error.code == -32602
