"""Typer CLI for Gatehouse."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="gatehouse", help="Gatehouse: multi-tenant authentication and audit service")
console = Console()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default from settings)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default from settings)"),
):
    """Start the Gatehouse API server."""
    import uvicorn
    from gatehouse.app import create_app
    from gatehouse.common.config import get_settings

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    console.print(f"[bold green]Starting Gatehouse on {host}:{port}[/bold green]")
    uvicorn.run(create_app(settings), host=host, port=port)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Gatehouse server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] — v{data['version']}")
    except (httpx.HTTPError, ValueError, KeyError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command("hash-password")
def hash_password_cmd(
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Plaintext password"),
    rounds: Optional[int] = typer.Option(None, help="bcrypt cost (default from settings)"),
):
    """Print a bcrypt hash suitable for the users table."""
    from gatehouse.auth.credentials import hash_password
    from gatehouse.common.config import get_settings

    console.print(hash_password(password, rounds or get_settings().bcrypt_rounds))


@app.command("inspect-token")
def inspect_token(
    token: str = typer.Argument(..., help="Bearer token to inspect"),
):
    """Check a token's signature and expiry offline (no revocation check)."""
    from datetime import datetime, timezone

    from gatehouse.auth.tokens import TokenService
    from gatehouse.common.config import get_settings

    settings = get_settings()
    result = TokenService(settings.token_secret, lifetime_seconds=settings.token_lifetime_seconds).inspect(token)

    if result.claims is None:
        console.print(f"[bold red]{result.status.value.upper()}[/bold red]")
        raise typer.Exit(1)

    claims = result.claims
    table = Table(title="Token claims")
    table.add_column("Claim")
    table.add_column("Value")
    table.add_row("userId", str(claims.user_id))
    table.add_row("tenantId", str(claims.tenant_id))
    table.add_row("email", claims.email or "-")
    table.add_row("walletAddress", claims.wallet_address or "-")
    table.add_row("authMethod", claims.auth_method)
    table.add_row("sessionId", claims.session_id)
    table.add_row("expires", datetime.fromtimestamp(claims.exp, tz=timezone.utc).isoformat())
    console.print(table)

    if result.ok:
        console.print("[bold green]VALID[/bold green]")
    else:
        console.print(f"[bold red]{result.status.value.upper()}[/bold red]")
        raise typer.Exit(1)


@app.command("challenge-message")
def challenge_message(
    address: str = typer.Argument(..., help="Wallet address as the client submits it"),
    nonce: str = typer.Argument(..., help="Challenge nonce"),
    issued_at: int = typer.Argument(..., help="Issue time, epoch milliseconds"),
    ttl_ms: Optional[int] = typer.Option(None, help="Challenge TTL in ms (default from settings)"),
):
    """Print the exact message a wallet must sign for a challenge."""
    from gatehouse.auth.nonces import build_challenge_message
    from gatehouse.common.config import get_settings

    ttl = ttl_ms if ttl_ms is not None else get_settings().wallet_nonce_ttl_ms
    typer.echo(build_challenge_message(address, nonce, issued_at, issued_at + ttl))


def _with_services(fn):
    """Run ``fn(services)`` against the configured stores, then shut down."""
    import asyncio

    from gatehouse.common.config import get_settings
    from gatehouse.deps import build_services

    async def run():
        services = build_services(get_settings())
        await services.startup()
        try:
            return await fn(services)
        finally:
            await services.shutdown()

    return asyncio.run(run())


@app.command("security-events")
def security_events(
    tenant: int = typer.Option(1, help="Tenant id"),
    days: int = typer.Option(30, help="Look-back window in days"),
    limit: int = typer.Option(50, help="Maximum rows"),
):
    """List recent failed logins and security events for a tenant."""
    records = _with_services(
        lambda s: s.audit.get_security_events(tenant, days=days, limit=limit)
    )
    if not records:
        console.print("No security events")
        return

    table = Table(title=f"Security events, tenant {tenant}")
    table.add_column("Time")
    table.add_column("Action")
    table.add_column("Severity")
    table.add_column("IP")
    for record in records:
        table.add_row(
            record["timestamp"][:19],
            record["action"],
            record["severity"],
            record["ipAddress"] or "-",
        )
    console.print(table)


@app.command("cleanup-logs")
def cleanup_logs(
    days: int = typer.Option(90, help="Delete activity records older than this"),
    tenant: Optional[int] = typer.Option(None, help="Limit to one tenant"),
):
    """Delete old activity records."""
    removed = _with_services(lambda s: s.audit.cleanup_old_logs(days=days, tenant_id=tenant))
    console.print(f"Removed {removed} activity records older than {days} days")


@app.command("sessions")
def tenant_sessions(
    tenant: int = typer.Option(1, help="Tenant id"),
    limit: int = typer.Option(100, help="Maximum rows"),
):
    """List the newest sessions opened in a tenant."""
    entries = _with_services(lambda s: s.sessions.list_tenant(tenant, limit=limit))
    if not entries:
        console.print("No sessions")
        return

    table = Table(title=f"Sessions, tenant {tenant}")
    table.add_column("User")
    table.add_column("Session")
    table.add_column("Issued at (ms)")
    for entry in entries:
        table.add_row(str(entry["userId"]), entry["sessionId"], str(entry["issuedAt"]))
    console.print(table)


if __name__ == "__main__":
    app()
