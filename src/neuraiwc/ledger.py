"""
Per-account view of the unspent output set.

Each account has one LedgerEntry that is replaced as a whole on refresh, so
readers always see either the old set or the new one, never a mix. Every
refresh bumps the entry generation, which lets PSBT signing detect that the
set it verified against has since changed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from loguru import logger

from neuraiwc.backends.base import ChainBackend, Utxo
from neuraiwc.chain_identity import AccountId, ChainIdentity
from neuraiwc.config import CoinSelectionPolicy
from neuraiwc.errors import InsufficientFunds
from neuraiwc.retry import retry_transient
from neuraiwc.wallet.address import AddressError, address_to_scriptpubkey


@dataclass(frozen=True)
class LedgerEntry:
    utxos: frozenset[Utxo]
    fetched_at: float
    generation: int

    @property
    def balance(self) -> int:
        return sum(utxo.value for utxo in self.utxos)


def _selection_key(policy: CoinSelectionPolicy) -> Callable[[Utxo], tuple]:
    if policy == CoinSelectionPolicy.SMALLEST_FIRST:
        return lambda u: (u.value, u.txid, u.vout)
    if policy == CoinSelectionPolicy.OLDEST_FIRST:
        # Unconfirmed outputs have no height and sort last
        return lambda u: (u.height if u.height else float("inf"), u.txid, u.vout)
    return lambda u: (-u.value, u.txid, u.vout)


class UtxoLedgerView:
    def __init__(
        self,
        backend: ChainBackend,
        identity: ChainIdentity,
        *,
        max_age: float = 60.0,
        min_confirmations: int = 1,
        policy: CoinSelectionPolicy = CoinSelectionPolicy.LARGEST_FIRST,
        fetch_timeout: float = 30.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.identity = identity
        self.max_age = max_age
        self.min_confirmations = min_confirmations
        self.policy = policy
        self.fetch_timeout = fetch_timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._clock = clock
        self._entries: dict[AccountId, LedgerEntry] = {}
        self._generations: dict[AccountId, int] = {}
        self._locks: dict[AccountId, asyncio.Lock] = {}

    def _lock(self, account_id: AccountId) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def entry(self, account_id: AccountId) -> LedgerEntry | None:
        return self._entries.get(account_id)

    def generation(self, account_id: AccountId) -> int:
        """Current generation; 0 means never fetched."""
        return self._generations.get(account_id, 0)

    def is_stale(self, account_id: AccountId) -> bool:
        entry = self._entries.get(account_id)
        if entry is None:
            return True
        return self._clock() - entry.fetched_at > self.max_age

    async def refresh(self, account_id: AccountId) -> frozenset[Utxo]:
        address = account_id.address
        async with self._lock(account_id):
            utxos = await retry_transient(
                lambda: self.backend.get_utxos(address),
                description=f"UTXO fetch for {account_id}",
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                timeout=self.fetch_timeout,
            )
            generation = self._generations.get(account_id, 0) + 1
            entry = LedgerEntry(frozenset(utxos), self._clock(), generation)
            self._generations[account_id] = generation
            self._entries[account_id] = entry

        logger.debug(
            f"Ledger refreshed: {len(entry.utxos)} UTXOs, {entry.balance} sats "
            f"(generation {generation})"
        )
        return entry.utxos

    async def ensure_fresh(self, account_ids: Iterable[AccountId]) -> None:
        """Refresh every account whose entry is missing or stale."""
        for account_id in dict.fromkeys(account_ids):
            if self.is_stale(account_id):
                await self.refresh(account_id)

    def lookup(
        self, txid: str, vout: int, account_ids: Iterable[AccountId]
    ) -> tuple[AccountId, Utxo] | None:
        for account_id in account_ids:
            entry = self._entries.get(account_id)
            if entry is None:
                continue
            for utxo in entry.utxos:
                if utxo.txid == txid and utxo.vout == vout:
                    return account_id, utxo
        return None

    def verify_ownership(self, utxo: Utxo, account_id: AccountId) -> bool:
        params = self.identity.params
        try:
            expected = address_to_scriptpubkey(
                account_id.address, params.pubkey_address_version, params.script_address_version
            )
        except AddressError:
            return False
        return utxo.scriptpubkey.lower() == expected.hex()

    async def select(self, account_ids: list[AccountId], target: int) -> list[Utxo]:
        """
        Select UTXOs covering target satoshis.

        Greedy over the configured ordering, stopping as soon as the target is
        reached. Ties are broken by outpoint so the result is deterministic.

        Raises:
            InsufficientFunds: eligible outputs do not cover the target
        """
        if target <= 0:
            raise ValueError(f"Selection target must be positive, got {target}")

        # An account listed twice must not contribute its outputs twice
        account_ids = list(dict.fromkeys(account_ids))
        await self.ensure_fresh(account_ids)

        eligible = []
        for account_id in account_ids:
            entry = self._entries[account_id]
            eligible.extend(
                utxo for utxo in entry.utxos if utxo.confirmations >= self.min_confirmations
            )
        eligible.sort(key=_selection_key(self.policy))

        selected = []
        total = 0
        for utxo in eligible:
            selected.append(utxo)
            total += utxo.value
            if total >= target:
                break

        if total < target:
            raise InsufficientFunds(target, total)

        logger.debug(f"Selected {len(selected)} UTXOs totalling {total} sats for {target}")
        return selected
