"""SmartScan command-line interface."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
from sqlalchemy.orm import sessionmaker
from rich import print as rprint
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .access import Actor
from .config import DEFAULT_CONFIG_PATH, SmartScanConfig, load_config, save_config
from .db import DEFAULT_ADMIN_EMAIL, first_admin_email, get_engine, get_session_factory, init_db, seed_admin
from .exceptions import NotFoundError, SmartScanError
from .log import setup_logging
from .pipeline import DocumentIngester, IncomingFile, OCREngine
from .search import SearchEngine, SearchQuery
from .storage import BlobStore
from .users import UserService

app = typer.Typer(
    name="smartscan",
    help="Scanned document archive with OCR and role-scoped search.",
    no_args_is_help=True,
)

console = Console()

users_app = typer.Typer(help="Manage users and roles")
app.add_typer(users_app, name="users")


@dataclass
class _Context:
    config: SmartScanConfig
    users: UserService
    session_factory: sessionmaker
    blob_store: BlobStore


def _context(config_path: Optional[Path] = None) -> _Context:
    config = load_config(config_path)
    setup_logging(config.log_level)
    engine = get_engine(config.resolved_database_url)
    init_db(engine)
    session_factory = get_session_factory(engine)
    blob_store = BlobStore(config.resolved_upload_dir)
    return _Context(config, UserService(session_factory, blob_store), session_factory, blob_store)


def _actor(ctx: _Context, email: str) -> Actor:
    user = ctx.users.find_by_email(email)
    if user is None:
        raise NotFoundError(f"No user with email {email}")
    return Actor(id=user.id, role=user.role)


def _fail(e: SmartScanError) -> typer.Exit:
    rprint(f"[red]{e.kind}: {e.message}[/red]")
    return typer.Exit(code=1)


AS_OPTION = typer.Option(DEFAULT_ADMIN_EMAIL, "--as", help="Act as this user (email)")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Config file path")


# === Setup ===


@app.command()
def init(
    config_path: Optional[Path] = CONFIG_OPTION,
    admin_email: str = typer.Option(DEFAULT_ADMIN_EMAIL, "--admin-email", help="Email of the seeded admin"),
):
    """Create the database, the upload directory and a default config."""
    config = load_config(config_path)
    setup_logging(config.log_level)

    engine = get_engine(config.resolved_database_url)
    init_db(engine, seed=False)
    seeded = seed_admin(engine, email=admin_email)
    config.resolved_upload_dir.mkdir(parents=True, exist_ok=True)

    path = config_path or DEFAULT_CONFIG_PATH
    if not Path(path).exists():
        save_config(config, path)

    table = Table(title="SmartScan")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Config", str(path))
    table.add_row("Database", config.resolved_database_url)
    table.add_row("Uploads", str(config.resolved_upload_dir))
    table.add_row("OCR languages", config.ocr.language_spec)
    table.add_row("Admin", admin_email + (" (created)" if seeded else ""))
    console.print(table)


# === Documents ===


@app.command()
def ingest(
    paths: list[Path] = typer.Argument(..., help="Files forming one document, in page order"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Document title"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Document description"),
    category: Optional[str] = typer.Option(None, "--category", help="Document category"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", help="Tag (repeatable)"),
    as_email: str = AS_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Ingest files as one document (OCR + entity extraction)."""
    ctx = _context(config_path)

    missing = [p for p in paths if not p.is_file()]
    if missing:
        rprint(f"[red]Not a file: {', '.join(str(p) for p in missing)}[/red]")
        raise typer.Exit(code=1)

    ingester = DocumentIngester(
        ctx.session_factory,
        ctx.blob_store,
        OCREngine.from_config(ctx.config.ocr),
        max_file_size=ctx.config.storage.max_file_size,
        max_files=ctx.config.storage.max_files,
    )
    files = [IncomingFile(filename=p.name, content=p.read_bytes()) for p in paths]

    try:
        actor = _actor(ctx, as_email)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            console=console,
        ) as progress:
            tasks = {
                i + 1: progress.add_task(f"Page {i + 1}: {p.name}", total=100)
                for i, p in enumerate(paths)
            }

            def on_progress(page_order: int, percent: int) -> None:
                progress.update(tasks[page_order], completed=percent)

            result = asyncio.run(ingester.ingest(
                actor,
                files,
                title=title,
                description=description,
                category=category,
                tags=tags,
                on_progress=on_progress,
            ))
            for task_id in tasks.values():
                progress.update(task_id, completed=100)
    except SmartScanError as e:
        raise _fail(e)

    table = Table(title=f"Document {result.document_id}")
    table.add_column("#", style="cyan")
    table.add_column("File")
    table.add_column("OCR")
    table.add_column("Confidence")
    for outcome in result.pages:
        if not outcome.ocr_attempted:
            ocr = "[dim]skipped[/dim]"
        elif outcome.ocr_success:
            ocr = "[green]ok[/green]"
        else:
            ocr = f"[yellow]failed: {outcome.error}[/yellow]"
        confidence = f"{outcome.confidence:.0%}" if outcome.ocr_success else "-"
        table.add_row(str(outcome.page_order), outcome.file_name, ocr, confidence)
    console.print(table)
    rprint(f"[green]✓ {result.pages_processed} page(s), status {result.status.value}[/green]")


@app.command()
def search(
    query: Optional[str] = typer.Argument(None, help="Text to search for"),
    search_type: str = typer.Option("all", "--type", help="all, document or content"),
    category: Optional[str] = typer.Option(None, "--category", help="Exact category"),
    date_from: Optional[str] = typer.Option(None, "--from", help="Created on or after (YYYY-MM-DD)"),
    date_to: Optional[str] = typer.Option(None, "--to", help="Created on or before (YYYY-MM-DD)"),
    has_date: bool = typer.Option(False, "--has-date", help="Only documents with extracted dates"),
    has_amount: bool = typer.Option(False, "--has-amount", help="Only documents with extracted amounts"),
    page: int = typer.Option(1, "--page", "-p", help="Result page"),
    limit: int = typer.Option(20, "--limit", "-n", help="Results per page"),
    as_email: str = AS_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Search documents visible to a user."""
    ctx = _context(config_path)
    engine = SearchEngine(ctx.session_factory, ctx.config.search)

    try:
        response = engine.search(_actor(ctx, as_email), SearchQuery(
            q=query,
            type=search_type,
            category=category,
            date_from=date_from,
            date_to=date_to,
            has_date=has_date,
            has_amount=has_amount,
            page=page,
            limit=limit,
        ))
    except SmartScanError as e:
        raise _fail(e)

    p = response.pagination
    table = Table(title=f"Results {p.page}/{max(p.pages, 1)} ({p.total} total)")
    table.add_column("Title", style="cyan")
    table.add_column("Category")
    table.add_column("Created")
    table.add_column("Matches")
    for hit in response.results:
        snippets = "\n".join(
            f"p{m.page_order}: …{m.highlights[0]}…" for m in hit.matched_pages if m.highlights
        )
        table.add_row(hit.title, hit.category, hit.created_at.strftime("%Y-%m-%d %H:%M"), snippets or "-")
    console.print(table)


# === Users ===


@users_app.command("list")
def users_list(as_email: str = AS_OPTION, config_path: Optional[Path] = CONFIG_OPTION):
    """List users."""
    ctx = _context(config_path)
    try:
        users = ctx.users.list_users(_actor(ctx, as_email))
    except SmartScanError as e:
        raise _fail(e)

    table = Table(title="Users")
    table.add_column("Email", style="cyan")
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Documents")
    for user in users:
        table.add_row(user.email, user.name or "", user.role.value, str(user.document_count))
    console.print(table)


@users_app.command("add")
def users_add(
    email: str = typer.Argument(..., help="Email of the new user"),
    role: str = typer.Option("user", "--role", "-r", help="admin, manager, user or guest"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    password_hash: str = typer.Option("!", "--password-hash", help="Opaque credential (default: login disabled)"),
    as_email: str = AS_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Create a user."""
    ctx = _context(config_path)
    try:
        user = ctx.users.create_user(_actor(ctx, as_email), email, password_hash, name=name, role=role)
    except SmartScanError as e:
        raise _fail(e)
    rprint(f"[green]✓ Created {user.email} ({user.role.value})[/green]")


@users_app.command("role")
def users_role(
    email: str = typer.Argument(..., help="Email of the user"),
    role: str = typer.Argument(..., help="New role"),
    as_email: str = AS_OPTION,
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Change a user's role."""
    ctx = _context(config_path)
    try:
        target = ctx.users.find_by_email(email)
        if target is None:
            raise NotFoundError(f"No user with email {email}")
        user = ctx.users.update_role(_actor(ctx, as_email), target.id, role)
    except SmartScanError as e:
        raise _fail(e)
    rprint(f"[green]✓ {user.email} is now {user.role.value}[/green]")


# === Server Command ===


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to run on"),
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Start the SmartScan API server."""
    import uvicorn

    from .server import create_app

    config = load_config(config_path)
    host = host or config.server.host
    port = port or config.server.port

    engine = get_engine(config.resolved_database_url)
    init_db(engine)

    if not config.server.api_tokens:
        # Session token for whichever admin the database holds
        admin_email = first_admin_email(engine) or DEFAULT_ADMIN_EMAIL
        token = secrets.token_urlsafe(16)
        config.server.api_tokens[token] = admin_email
        rprint(f"[cyan]Admin token:[/cyan] {token} ({admin_email})")

    rprint("\n[bold green]SmartScan[/bold green]")
    rprint("─" * 50)
    rprint(f"[cyan]API:[/cyan]      http://{host}:{port}/api")
    rprint(f"[cyan]Database:[/cyan] {config.resolved_database_url}")
    rprint(f"[cyan]Uploads:[/cyan]  {config.resolved_upload_dir}")
    rprint("─" * 50)
    rprint("[dim]Press Ctrl+C to stop the server.[/dim]\n")

    uvicorn.run(create_app(config, engine=engine), host=host, port=port, log_level="warning")


# === Main Entry Point ===


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
