"""CLI entry point for the storage coordinator and the provider agent."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
import httpx

from storage_coordinator.config import load_agent_config, load_config
from storage_coordinator.daemon import run_daemon
from storage_coordinator.errors import AgreementNotFound, ConfigError, InvalidAgreementId
from storage_coordinator.market.queries import MarketplaceQueryService
from storage_coordinator.providers.agent import ProviderAgent
from storage_coordinator.storage.sqlite import SQLiteMarketStore


def _load(ctx: click.Context):
    try:
        return load_config(ctx.obj["config_path"])
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _require_contract(cfg):
    """Exit with error if no contract ID is configured."""
    if not cfg.contract_id:
        click.echo("Error: No contract ID configured.", err=True)
        click.echo("Set STORAGE_COORD_CONTRACT_ID or check deployments.json.", err=True)
        sys.exit(1)


def _price(value) -> str:
    return "-" if value is None else f"{value:g}"


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Path to config TOML file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """storage-coordinator - decentralized storage marketplace coordinator."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _setup_logging(ctx: click.Context, level_name: str) -> None:
    level = logging.DEBUG if ctx.obj["verbose"] else getattr(
        logging, level_name.upper(), logging.INFO,
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Services ───────────────────────────────────────────


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the coordinator (event projection, provider hub, HTTP API)."""
    cfg = _load(ctx)
    _require_contract(cfg)
    _setup_logging(ctx, cfg.log_level)

    click.echo(f"Starting storage coordinator on {cfg.host}:{cfg.port}")
    asyncio.run(run_daemon(cfg))


@cli.command()
@click.option("--address", default=None, help="Provider account address (overrides config)")
@click.option("--server", default=None, help="Coordinator base URL (overrides config)")
@click.option("--storage-dir", default=None, help="Directory fragments are written to")
@click.pass_context
def provider(
    ctx: click.Context,
    address: str | None,
    server: str | None,
    storage_dir: str | None,
) -> None:
    """Run a provider agent that stores fragments sent by the coordinator."""
    try:
        agent_cfg = load_agent_config(ctx.obj["config_path"])
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    if address:
        agent_cfg.provider_address = address
    if server:
        agent_cfg.server_url = server
    if storage_dir:
        agent_cfg.storage_dir = str(Path(storage_dir).expanduser())
    if not agent_cfg.provider_address:
        click.echo("Error: No provider address configured.", err=True)
        click.echo("Pass --address or set STORAGE_COORD_PROVIDER_ADDRESS.", err=True)
        sys.exit(1)
    _setup_logging(ctx, "info")

    async def _run():
        agent = ProviderAgent(agent_cfg)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(agent.stop()))
            except NotImplementedError:
                pass
        await agent.run()

    click.echo(f"Starting provider agent for {agent_cfg.provider_address}")
    asyncio.run(_run())


# ── Info ───────────────────────────────────────────────


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show coordinator configuration and what the local store holds."""
    cfg = _load(ctx)

    async def _counts():
        store = SQLiteMarketStore(cfg.db_path)
        await store.initialize()
        try:
            return await store.counts()
        finally:
            await store.close()

    counts = asyncio.run(_counts())
    click.echo(f"Network:          {cfg.network}")
    click.echo(f"RPC URL:          {cfg.rpc_url}")
    click.echo(f"Contract:         {cfg.contract_id or '(not set)'}")
    click.echo(f"Listen:           {cfg.host}:{cfg.port}")
    click.echo(f"DB path:          {cfg.db_path}")
    click.echo(f"Poll interval:    {cfg.poll_interval}s")
    click.echo(f"Transfer timeout: {cfg.transfer_timeout:g}s")
    click.echo(f"Max upload:       {cfg.max_upload_mb} MB")
    click.echo(f"Capacity-aware:   {cfg.capacity_aware}")
    click.echo("")
    click.echo(f"Offerings:        {counts.offerings}")
    click.echo(f"Agreements:       {counts.agreements}")
    click.echo(f"Payments:         {counts.payments}")
    by_status = ", ".join(f"{k}={v}" for k, v in sorted(counts.by_status.items()))
    click.echo(f"Transfers:        {counts.transfers}" + (f" ({by_status})" if by_status else ""))


@cli.command()
@click.option("--provider", "provider_address", default=None, help="Only this provider's offerings")
@click.option("--all", "show_all", is_flag=True, help="Include withdrawn offerings")
@click.pass_context
def offerings(ctx: click.Context, provider_address: str | None, show_all: bool) -> None:
    """List offerings from the local store."""
    cfg = _load(ctx)

    async def _offerings():
        store = SQLiteMarketStore(cfg.db_path)
        await store.initialize()
        try:
            queries = MarketplaceQueryService(store)
            if provider_address:
                rows = await queries.offerings_by_provider(provider_address)
            elif show_all:
                rows = await store.list_offerings()
            else:
                rows = await queries.list_active_offerings()

            if not rows:
                click.echo("No offerings.")
                return
            for o in rows:
                state = "available" if o.is_available else "withdrawn"
                click.echo(
                    f"  #{o.offering_id} [{state:9s}] provider={o.provider or '?'} "
                    f"capacity={o.capacity if o.capacity is not None else '?'}GB "
                    f"price={_price(o.price_per_gb_per_day)}/GB/day"
                )
        finally:
            await store.close()

    asyncio.run(_offerings())


@cli.command()
@click.option("--consumer", default=None, help="Only this consumer's agreements")
@click.option("--provider", "provider_address", default=None, help="Only this provider's agreements")
@click.option("--id", "agreement_id", default=None, help="Show a single agreement")
@click.pass_context
def agreements(
    ctx: click.Context,
    consumer: str | None,
    provider_address: str | None,
    agreement_id: str | None,
) -> None:
    """List agreements from the local store."""
    cfg = _load(ctx)

    async def _agreements():
        store = SQLiteMarketStore(cfg.db_path)
        await store.initialize()
        try:
            queries = MarketplaceQueryService(store)
            if agreement_id is not None:
                try:
                    rows = [await queries.agreement_by_id(agreement_id)]
                except (InvalidAgreementId, AgreementNotFound) as exc:
                    click.echo(f"Error: {exc}", err=True)
                    return 1
            elif consumer:
                rows = await queries.agreements_by_consumer(consumer)
            elif provider_address:
                rows = await queries.agreements_by_provider(provider_address)
            else:
                rows = await queries.list_agreements()

            if not rows:
                click.echo("No agreements.")
                return 0
            for a in rows:
                state = "active" if a.is_active else "inactive"
                click.echo(
                    f"  #{a.agreement_id} [{state:8s}] consumer={a.consumer or '?'} "
                    f"provider={a.provider or '?'} "
                    f"capacity={a.capacity if a.capacity is not None else '?'}GB "
                    f"price={_price(a.price_per_gb_per_day)}/GB/day"
                )
            return 0
        finally:
            await store.close()

    if asyncio.run(_agreements()):
        sys.exit(1)


@cli.command()
@click.argument("file_id", required=False)
@click.option("--status", "filter_status", default=None,
              help="Filter by status (dispatched, stored, failed, timed_out)")
@click.pass_context
def transfers(ctx: click.Context, file_id: str | None, filter_status: str | None) -> None:
    """Show fragment transfers recorded in the local store."""
    cfg = _load(ctx)

    async def _transfers():
        store = SQLiteMarketStore(cfg.db_path)
        await store.initialize()
        try:
            if file_id:
                transfer = await store.get_transfer(file_id)
                rows = [transfer] if transfer else []
            else:
                rows = await store.list_transfers(filter_status)

            if not rows:
                click.echo("No transfers.")
                return
            for t in rows:
                line = (
                    f"  [{t.status.value:10s}] {t.file_id} {t.original_file_name} "
                    f"({t.size_bytes} bytes) -> {t.provider_address}"
                )
                if t.error:
                    line += f" error={t.error}"
                click.echo(line)
        finally:
            await store.close()

    asyncio.run(_transfers())


# ── Client ─────────────────────────────────────────────


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--wallet", required=True, help="Consumer wallet address")
@click.option("--agreement-id", default=None, help="Agreement to store the fragment under")
@click.option("--server", default=None, help="Coordinator base URL")
@click.pass_context
def upload(
    ctx: click.Context,
    path: Path,
    wallet: str,
    agreement_id: str | None,
    server: str | None,
) -> None:
    """Upload a file to a running coordinator."""
    cfg = _load(ctx)
    base_url = server or f"http://{'localhost' if cfg.host == '0.0.0.0' else cfg.host}:{cfg.port}"

    data = {"walletAddress": wallet}
    if agreement_id:
        data["agreementId"] = agreement_id

    try:
        with open(path, "rb") as f:
            response = httpx.post(
                f"{base_url.rstrip('/')}/upload",
                data=data,
                files={"file": (path.name, f)},
                timeout=60.0,
            )
    except httpx.HTTPError as exc:
        click.echo(f"Upload failed: {exc}", err=True)
        sys.exit(1)

    try:
        body = response.json()
    except ValueError:
        body = {"error": response.text}
    if response.status_code >= 400:
        click.echo(f"Upload failed ({response.status_code}): {body.get('error')}", err=True)
        sys.exit(1)

    click.echo(body.get("message", "Uploaded"))
    click.echo(f"  File ID:   {body.get('fileId')}")
    click.echo(f"  Provider:  {body.get('providerAddress')}")
    click.echo(f"  Agreement: {body.get('agreementId')}")
    click.echo(f"  Status:    {body.get('status')}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
