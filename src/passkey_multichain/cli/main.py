"""
passkey-mc CLI entry point.

Usage:
    passkey-mc [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ..accounts import Call
from ..config import MultiChainSettings, load_settings
from ..endpoints import build_endpoint_sets
from ..exceptions import ConfigurationError, MultiChainError
from ..identity import IdentityProvider
from ..kernel_constants import ZERO_ADDRESS
from ..logging_utils import mask_url, setup_logging
from ..retry import RPC_RETRY_CONFIG
from ..session import MultiChainSession
from ..validators import verify_endpoint
from ..webauthn import SoftwareAuthenticator

console = Console()

_STATUS_STYLES = {
    "succeeded": "green",
    "partial": "yellow",
    "pending": "yellow",
    "failed": "red",
    "aborted": "red",
    "not_submitted": "dim",
}


@click.group()
@click.version_option(message="%(prog)s %(version)s", package_name="passkey-multichain")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Settings file (.env format)")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, env_file: str | None, verbose: bool):
    """Passkey smart accounts spanning several chains."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(env_file)
    except (ValidationError, ConfigurationError) as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_format=settings.json_logs,
        audit_log_path=settings.audit_log_path or None,
    )
    ctx.obj["settings"] = settings
    ctx.obj["verbose"] = verbose


@cli.command()
@click.option("--check", is_flag=True, help="Confirm each endpoint serves its chain")
@click.pass_context
def status(ctx, check: bool):
    """Show configured chains and version pinning."""
    settings: MultiChainSettings = ctx.obj["settings"]

    console.print("\n[bold blue]Passkey Multi-Chain Status[/bold blue]\n")
    console.print(f"Environment: [cyan]{settings.environment}[/cyan]")
    console.print(f"EntryPoint: [cyan]v{settings.entry_point_version.value}[/cyan]")
    console.print(f"Kernel: [cyan]{settings.account_version.value}[/cyan]")
    console.print(f"WebAuthn validator: [cyan]{settings.webauthn_validator_address}[/cyan]")
    console.print(f"Paymaster: [cyan]{settings.paymaster_provider.value if settings.use_paymaster else 'disabled'}[/cyan]")

    table = Table(title="Chains")
    table.add_column("Chain", style="cyan")
    table.add_column("Chain ID", justify="right")
    table.add_column("Bundler")
    table.add_column("Paymaster")
    table.add_column("Passkey Server")
    table.add_column("Receipt Timeout", justify="right")

    for chain in settings.chains:
        try:
            bundler = mask_url(chain.resolved_bundler_url())
        except ConfigurationError:
            bundler = "[yellow]Not configured[/yellow]"
        table.add_row(
            chain.spec.display_name,
            str(chain.chain_id),
            bundler,
            mask_url(chain.resolved_paymaster_url()) or "[dim]-[/dim]",
            mask_url(chain.resolved_passkey_server_url()) or "[dim]local[/dim]",
            f"{settings.receipt_timeout_for(chain.name):.0f}s",
        )
    console.print(table)

    if check:
        asyncio.run(_check_endpoints(settings))
    console.print()


async def _check_endpoints(settings: MultiChainSettings) -> None:
    try:
        endpoint_sets = build_endpoint_sets(settings)
    except ConfigurationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        return
    try:
        for endpoints in endpoint_sets:
            try:
                await verify_endpoint(endpoints, RPC_RETRY_CONFIG)
                console.print(f"{endpoints.chain.display_name}: [green]reachable[/green]")
            except MultiChainError as e:
                console.print(f"{endpoints.chain.display_name}: [red]{e.message}[/red]")
    finally:
        for endpoints in endpoint_sets:
            await endpoints.close()


@cli.command()
@click.option("--username", default="alice", show_default=True, help="Passkey name to register")
@click.option("--delegate/--no-delegate", default=True, show_default=True, help="Act through a session key")
@click.option("--send/--no-send", default=True, show_default=True, help="Submit an empty call on every chain")
@click.pass_context
def demo(ctx, username: str, delegate: bool, send: bool):
    """Register a development passkey, build the account, send a no-op on each chain."""
    settings: MultiChainSettings = ctx.obj["settings"]
    try:
        asyncio.run(_run_demo(settings, username, delegate, send))
    except MultiChainError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}") from e


async def _run_demo(settings: MultiChainSettings, username: str, delegate: bool, send: bool) -> None:
    authenticator = SoftwareAuthenticator(origin=settings.origin)
    provider = IdentityProvider(authenticator, rp_id=settings.rp_id, origin=settings.origin)

    async with MultiChainSession(settings, authenticator, identity_provider=provider) as session:
        identity = await session.register(username)
        console.print(f"Registered passkey for [cyan]{identity.credential_name}[/cyan]")

        ready = await session.build_accounts(identity, delegate=delegate)
        console.print(f"Account: [green]{ready.address}[/green]")
        if ready.session_key_address:
            console.print(f"Session key: [cyan]{ready.session_key_address}[/cyan]")

        table = Table(title="Accounts")
        table.add_column("Chain", style="cyan")
        table.add_column("Address")
        table.add_column("Deployed")
        table.add_column("Explorer")
        for endpoints, account in zip(session.endpoint_sets, ready.accounts):
            table.add_row(
                endpoints.chain.display_name,
                account.address,
                "yes" if account.deployed else "no",
                endpoints.chain.account_url(account.address),
            )
        console.print(table)

        if not send:
            return

        console.print("\nSending UserOps...")
        result = await session.submit_action(Call(to=ZERO_ADDRESS, value=0, data="0x"))

        style = _STATUS_STYLES.get(result.outcome.value, "white")
        console.print(f"Outcome: [{style}]{result.outcome.value}[/{style}]")
        if result.error:
            console.print(f"[red]{result.error.error_code}: {result.error.message}[/red]")

        table = Table(title="UserOps")
        table.add_column("Chain", style="cyan")
        table.add_column("Status")
        table.add_column("UserOp Hash")
        table.add_column("Link")
        table.add_column("Error")
        for chain_result in result.results:
            style = _STATUS_STYLES.get(chain_result.status.value, "white")
            table.add_row(
                chain_result.chain,
                f"[{style}]{chain_result.status.value}[/{style}]",
                chain_result.user_op_hash or "-",
                chain_result.explorer_url or "-",
                chain_result.error.message if chain_result.error else "",
            )
        console.print(table)
        if result.artifact:
            console.print(f"Audit record: {result.artifact.path} (sha256 {result.artifact.sha256[:12]}...)")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
