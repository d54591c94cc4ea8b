"""appbase operator CLI -- Typer-based maintenance commands.

Provides commands an operator runs against the state store outside the
HTTP surface: registering an app's Stripe connected account, purging
expired sessions and inspecting an end user's entitlement.  Human-readable
output goes to *stderr* via Rich.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import typer
from appbase_core.state.database import get_engine, set_maintenance_context, set_tenant_context
from appbase_core.state.repository import ConnectedAccountRepository, SessionRepository
from rich.console import Console
from rich.table import Table
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appbase_api.config import APISettings, load_api_settings
from appbase_api.services.billing_service import BillingService

app = typer.Typer(
    name="appbase",
    help="appbase - tenant-scoped sessions and billing maintenance",
    no_args_is_help=True,
)
console = Console(stderr=True)

_T = TypeVar("_T")


def _run(settings: APISettings, work: Callable[[AsyncSession], Awaitable[_T]]) -> _T:
    """Run *work* in one committed transaction against the configured database."""

    async def _main() -> _T:
        engine = get_engine(settings.database_url)
        try:
            factory = async_sessionmaker(engine, expire_on_commit=False)
            async with factory() as session:
                result = await work(session)
                await session.commit()
                return result
        finally:
            await engine.dispose()

    return asyncio.run(_main())


@app.command("link-account")
def link_account(
    app_id: str = typer.Argument(..., help="App (tenant) id."),
    stripe_account_id: str = typer.Argument(..., help="Stripe connected account id (acct_...)."),
    livemode: bool = typer.Option(False, "--livemode", help="The account is a live-mode account."),
) -> None:
    """Register APP_ID as the owner of a Stripe connected account."""
    settings = load_api_settings()

    async def _work(session: AsyncSession) -> None:
        await set_tenant_context(session, app_id)
        await ConnectedAccountRepository(session, app_id).link(stripe_account_id, livemode=livemode)

    try:
        _run(settings, _work)
    except (PermissionError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Linked {stripe_account_id} to app {app_id}[/green]")


@app.command("purge-sessions")
def purge_sessions() -> None:
    """Delete every expired end-user session once."""
    settings = load_api_settings()

    async def _work(session: AsyncSession) -> int:
        await set_maintenance_context(session)
        return await SessionRepository.purge_all_expired(session, datetime.now(UTC))

    removed = _run(settings, _work)
    console.print(f"Removed [bold]{removed}[/bold] expired session(s)")


@app.command("entitlement")
def entitlement(
    app_id: str = typer.Argument(..., help="App (tenant) id."),
    end_user_id: str = typer.Argument(..., help="End-user subject id."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON to stdout."),
) -> None:
    """Recompute and show an end user's billing entitlement."""
    settings = load_api_settings()

    async def _work(session: AsyncSession) -> dict[str, Any]:
        await set_tenant_context(session, app_id)
        result = await BillingService(session, settings, tenant_id=app_id).recompute_entitlement(end_user_id)
        return {
            "app_id": app_id,
            "end_user_id": end_user_id,
            "billing_status": result.status.value,
            "access_until": result.access_until.isoformat() if result.access_until else None,
            "source": result.source,
        }

    try:
        data = _run(settings, _work)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if json_output:
        typer.echo(json.dumps(data))
        return

    table = Table(title=f"Entitlement {app_id}/{end_user_id}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key in ("billing_status", "access_until", "source"):
        table.add_row(key, str(data[key]) if data[key] is not None else "-")
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
