"""
Neurai WalletConnect bridge CLI - inspect chain ids, accounts, UTXOs, PSBTs and sessions.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from pydantic import ValidationError

from neuraiwc.accounts import derive_accounts
from neuraiwc.backends.neurai_rpc import NeuraiRpcBackend
from neuraiwc.broadcast import BroadcastService
from neuraiwc.chain_identity import chain_id_from_genesis
from neuraiwc.config import BridgeSettings
from neuraiwc.constants import SATS_PER_COIN
from neuraiwc.errors import BridgeError
from neuraiwc.session_store import SessionStore
from neuraiwc.wallet.custody import HDCustody
from neuraiwc.wallet.psbt import Psbt, PsbtError
from neuraiwc.wallet.transaction import TransactionError

app = typer.Typer(
    name="neurai-wc",
    help="Neurai WalletConnect bridge",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_settings(**overrides) -> BridgeSettings:
    try:
        return BridgeSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)


def _load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)
    return mnemonic


@app.command()
def chain_id(
    genesis_hash: str = typer.Argument(..., help="Genesis block hash (hex)"),
) -> None:
    """Print the CAIP-2 chain id for a genesis block hash."""
    setup_logging("WARNING")
    try:
        typer.echo(str(chain_id_from_genesis(genesis_hash)))
    except BridgeError as e:
        logger.error(e.message)
        raise typer.Exit(1)


@app.command()
def accounts(
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    network: str | None = typer.Option(None, "--network", "-n", help="mainnet | testnet | regtest"),
    chain_reference: str | None = typer.Option(
        None, "--chain-reference", help="Genesis hash (required off mainnet)"
    ),
    count: int = typer.Option(1, "--count", "-c", help="Number of accounts"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Derive the CAIP-10 accounts the bridge would expose."""
    setup_logging(log_level)
    settings = _load_settings(network=network, chain_reference=chain_reference)
    custody = HDCustody(_load_mnemonic(mnemonic, mnemonic_file))

    derived = asyncio.run(derive_accounts(custody, settings.chain_identity(), count))
    for account in derived:
        typer.echo(f"{account.path}  {account.account_id}")


@app.command()
def utxos(
    address: str = typer.Argument(..., help="Neurai address"),
    network: str | None = typer.Option(None, "--network", "-n"),
    chain_reference: str | None = typer.Option(None, "--chain-reference"),
    rpc_url: str | None = typer.Option(None, "--rpc-url", envvar="NEURAI_RPC_URL"),
    rpc_user: str | None = typer.Option(None, "--rpc-user", envvar="NEURAI_RPC_USER"),
    rpc_password: str | None = typer.Option(None, "--rpc-password", envvar="NEURAI_RPC_PASSWORD"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """List unspent outputs of an address from the node."""
    setup_logging(log_level)
    settings = _load_settings(
        network=network,
        chain_reference=chain_reference,
        rpc_url=rpc_url,
        rpc_user=rpc_user,
        rpc_password=rpc_password,
    )
    if not settings.chain_identity().validate_address(address):
        logger.error(f"Not a {settings.network.value} address: {address}")
        raise typer.Exit(1)

    try:
        found = asyncio.run(_fetch_utxos(settings, address))
    except BridgeError as e:
        logger.error(e.message)
        raise typer.Exit(1)

    total = 0
    for utxo in sorted(found, key=lambda u: (u.txid, u.vout)):
        total += utxo.value
        amount = utxo.value / SATS_PER_COIN
        typer.echo(f"{utxo.txid}:{utxo.vout}  {amount:.8f}  conf={utxo.confirmations}")
    typer.echo(f"Total: {total / SATS_PER_COIN:.8f} XNA in {len(found)} UTXO(s)")


async def _fetch_utxos(settings: BridgeSettings, address: str) -> list:
    backend = NeuraiRpcBackend(
        rpc_url=settings.effective_rpc_url,
        rpc_user=settings.rpc_user,
        rpc_password=settings.rpc_password,
        timeout=settings.rpc_timeout,
    )
    try:
        return await backend.get_utxos(address)
    finally:
        await backend.close()


@app.command()
def decode_psbt(
    psbt: str = typer.Argument(..., help="Base64 PSBT"),
) -> None:
    """Show the inputs, outputs and signing state of a PSBT."""
    setup_logging("WARNING")
    try:
        decoded = Psbt.from_base64(psbt)
    except (PsbtError, TransactionError) as e:
        logger.error(f"Malformed PSBT: {e}")
        raise typer.Exit(1)

    typer.echo(f"Version: {decoded.tx.version}  Locktime: {decoded.tx.locktime}")
    typer.echo(f"Inputs ({len(decoded.inputs)}):")
    for index, (tx_in, psbt_in) in enumerate(zip(decoded.tx.inputs, decoded.inputs, strict=True)):
        if psbt_in.is_finalized:
            state = "finalized"
        else:
            state = f"{len(psbt_in.partial_sigs)} partial sig(s)"
        typer.echo(f"  [{index}] {tx_in.txid}:{tx_in.vout}  {state}")
    typer.echo(f"Outputs ({len(decoded.tx.outputs)}):")
    for index, tx_out in enumerate(decoded.tx.outputs):
        typer.echo(f"  [{index}] {tx_out.value / SATS_PER_COIN:.8f}  {tx_out.script.hex()}")


@app.command()
def sessions(
    store: Path | None = typer.Option(None, "--store", "-s", help="Session store file"),
) -> None:
    """List persisted WalletConnect sessions."""
    setup_logging("WARNING")
    path = store or _load_settings().session_store_path
    if path is None:
        typer.echo("Session persistence is disabled")
        return

    persisted = SessionStore(path).load()
    if not persisted:
        typer.echo("No persisted sessions")
        return
    for session in persisted:
        expired = " (expired)" if session.is_expired() else ""
        name = session.peer.name or "unnamed dApp"
        typer.echo(f"{session.topic}  {name}{expired}")
        typer.echo(f"  chains:   {', '.join(session.namespace.chains)}")
        typer.echo(f"  methods:  {', '.join(session.methods)}")
        typer.echo(f"  accounts: {', '.join(session.namespace.accounts)}")


@app.command()
def broadcast(
    tx_hex: str = typer.Argument(..., help="Signed transaction hex"),
    network: str | None = typer.Option(None, "--network", "-n"),
    chain_reference: str | None = typer.Option(None, "--chain-reference"),
    rpc_url: str | None = typer.Option(None, "--rpc-url", envvar="NEURAI_RPC_URL"),
    rpc_user: str | None = typer.Option(None, "--rpc-user", envvar="NEURAI_RPC_USER"),
    rpc_password: str | None = typer.Option(None, "--rpc-password", envvar="NEURAI_RPC_PASSWORD"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Broadcast a signed transaction."""
    setup_logging(log_level)
    settings = _load_settings(
        network=network,
        chain_reference=chain_reference,
        rpc_url=rpc_url,
        rpc_user=rpc_user,
        rpc_password=rpc_password,
    )
    try:
        txid = asyncio.run(_broadcast(settings, tx_hex))
    except BridgeError as e:
        logger.error(e.message)
        raise typer.Exit(1)
    typer.echo(txid)


async def _broadcast(settings: BridgeSettings, tx_hex: str) -> str:
    backend = NeuraiRpcBackend(
        rpc_url=settings.effective_rpc_url,
        rpc_user=settings.rpc_user,
        rpc_password=settings.rpc_password,
        timeout=settings.rpc_timeout,
    )
    service = BroadcastService(
        backend,
        max_attempts=settings.broadcast_max_attempts,
        base_delay=settings.retry_base_delay,
        timeout=settings.rpc_timeout,
    )
    try:
        return await service.broadcast(tx_hex)
    finally:
        await backend.close()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
