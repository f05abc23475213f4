"""
Wallet accounts exposed to dApps.

Accounts are derived once from custody public keys and never mutated; an
account set change replaces the registry contents wholesale.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from neuraiwc.chain_identity import AccountId, ChainIdentity
from neuraiwc.wallet.address import pubkey_to_p2pkh_address
from neuraiwc.wallet.custody import Custody


@dataclass(frozen=True)
class DerivedAccount:
    account_id: AccountId
    path: str
    public_key: bytes

    @property
    def address(self) -> str:
        return self.account_id.address

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "account": str(self.account_id),
            "path": self.path,
            "publicKey": self.public_key.hex(),
        }


async def derive_accounts(
    custody: Custody, identity: ChainIdentity, count: int = 1, start: int = 0
) -> list[DerivedAccount]:
    """Derive count receive accounts starting at index start."""
    params = identity.params
    accounts = []
    for index in range(start, start + count):
        path = params.account_path(index)
        handle = await custody.derive(path)
        address = pubkey_to_p2pkh_address(handle.public_key, params.pubkey_address_version)
        accounts.append(DerivedAccount(identity.account_id(address), path, handle.public_key))
    logger.debug(f"Derived {len(accounts)} account(s) on {identity.chain_id}")
    return accounts


class AccountRegistry:
    """Lookup of the wallet's derived accounts by AccountId or address."""

    def __init__(self, accounts: list[DerivedAccount] | None = None):
        self._accounts: dict[AccountId, DerivedAccount] = {}
        self.replace(accounts or [])

    def replace(self, accounts: list[DerivedAccount]) -> None:
        self._accounts = {account.account_id: account for account in accounts}

    def get(self, account_id: AccountId) -> DerivedAccount | None:
        return self._accounts.get(account_id)

    def by_address(self, address: str) -> DerivedAccount | None:
        for account in self._accounts.values():
            if account.address == address:
                return account
        return None

    def account_ids(self) -> list[AccountId]:
        return list(self._accounts)

    def __iter__(self):
        return iter(self._accounts.values())

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._accounts
