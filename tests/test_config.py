"""
Tests for bridge settings.
"""

import pytest
from pydantic import ValidationError

from neuraiwc.config import BridgeSettings, CoinSelectionPolicy
from neuraiwc.constants import NEURAI_MAINNET_REFERENCE, NetworkType

GENESIS = "0000006b444bc2f2ffe627be9d9e7e7a0730000870ef6eb6da46c8eae389df90"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("NETWORK", "CHAIN_REFERENCE", "RPC_URL", "COIN_SELECTION", "MIN_CONFIRMATIONS"):
        monkeypatch.delenv(f"NEURAI_WC_{name}", raising=False)


class TestBridgeSettings:
    def test_mainnet_defaults(self):
        settings = BridgeSettings()
        assert settings.network == NetworkType.MAINNET
        assert str(settings.chain_id) == f"bip122:{NEURAI_MAINNET_REFERENCE}"
        assert settings.effective_rpc_url == "http://127.0.0.1:19001"
        assert settings.coin_selection == CoinSelectionPolicy.LARGEST_FIRST
        assert settings.chain_identity().params.bip44_coin_type == 1900

    def test_testnet_requires_reference(self):
        with pytest.raises(ValidationError, match="chain_reference"):
            BridgeSettings(network="testnet")

    def test_full_genesis_hash_truncated(self):
        settings = BridgeSettings(network="testnet", chain_reference=GENESIS)
        assert settings.chain_id.reference == GENESIS[:32]
        assert settings.chain_identity().params.pubkey_address_version == 127

    def test_malformed_reference(self):
        with pytest.raises(ValidationError):
            BridgeSettings(chain_reference="not-a-hash")

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("NEURAI_WC_NETWORK", "regtest")
        monkeypatch.setenv("NEURAI_WC_CHAIN_REFERENCE", GENESIS)
        monkeypatch.setenv("NEURAI_WC_RPC_URL", "http://node:8766")
        monkeypatch.setenv("NEURAI_WC_COIN_SELECTION", "oldest_first")
        monkeypatch.setenv("NEURAI_WC_MIN_CONFIRMATIONS", "3")

        settings = BridgeSettings()
        assert settings.network == NetworkType.REGTEST
        assert settings.effective_rpc_url == "http://node:8766"
        assert settings.coin_selection == CoinSelectionPolicy.OLDEST_FIRST
        assert settings.min_confirmations == 3

    def test_rejects_invalid_timeouts(self):
        with pytest.raises(ValidationError):
            BridgeSettings(request_timeout=0)
