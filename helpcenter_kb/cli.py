#!/usr/bin/env python3

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn
from rich.table import Table

from helpcenter_kb import __version__
from helpcenter_kb.config.paths import ensure_directories, get_paths
from helpcenter_kb.config.settings import (
    AppConfig,
    OllamaConfig,
    SourceConfig,
    config_exists,
    default_config,
    load_config,
    save_config,
)
from helpcenter_kb.errors import ConfigError, KnowledgeBaseError, format_error
from helpcenter_kb.indexer.embeddings import OllamaEmbedder
from helpcenter_kb.indexer.search import SearchEngine
from helpcenter_kb.indexer.store import KnowledgeBaseStore
from helpcenter_kb.observability.logging import configure_logging, setup_logging
from helpcenter_kb.pipelines.fetcher import HelpCenterClient
from helpcenter_kb.pipelines.sync import SyncCoordinator, SyncProgress, SyncResult
from helpcenter_kb.sources.registry import SourceRegistry

logger = logging.getLogger(__name__)

console = Console()
app = typer.Typer(help="helpcenter-kb - local semantic search over help-center articles",
                  no_args_is_help=True)
sources_app = typer.Typer(help="Manage help-center sources", no_args_is_help=True)
app.add_typer(sources_app, name="sources")


@dataclass
class CLIState:
    config_path: Optional[Path] = None
    verbose: bool = False


def _state(ctx: typer.Context) -> CLIState:
    return ctx.obj if isinstance(ctx.obj, CLIState) else CLIState()


def _fail(error: BaseException) -> None:
    console.print(f"❌ {format_error(error)}", style="bold red")
    raise typer.Exit(1)


def _load(ctx: typer.Context) -> AppConfig:
    state = _state(ctx)
    try:
        config = load_config(state.config_path)
    except ConfigError as e:
        _fail(e)

    configure_logging(config.logging, verbose=state.verbose, level="WARNING")
    return config


def _save(ctx: typer.Context, config: AppConfig) -> None:
    try:
        save_config(config, _state(ctx).config_path)
    except ConfigError as e:
        _fail(e)


def _open_store(config: AppConfig) -> KnowledgeBaseStore:
    paths = ensure_directories()
    return KnowledgeBaseStore(str(paths.database), dimension=config.ollama.dimension)


def _version_callback(value: bool):
    if value:
        console.print(f"helpcenter-kb {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", envvar="KB_CONFIG",
                                          help="Path to config.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs on stderr"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True,
                                 help="Show version and exit"),
):
    """Sync help-center articles into a local vector index and search them."""
    ctx.obj = CLIState(config_path=config, verbose=verbose)
    setup_logging(level="DEBUG" if verbose else "WARNING")


@app.command()
def init(
    ctx: typer.Context,
    ollama_url: str = typer.Option("http://localhost:11434", "--ollama-url", help="Ollama base URL"),
    model: str = typer.Option("nomic-embed-text", "--model", help="Embedding model"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
):
    """Create a default configuration file"""
    path = _state(ctx).config_path or get_paths().config_file
    if config_exists(path) and not force:
        console.print(f"⚠️  Configuration already exists at {path} (use --force to overwrite)",
                      style="yellow")
        raise typer.Exit(1)

    try:
        config = default_config().model_copy(
            update={"ollama": OllamaConfig(base_url=ollama_url, model=model)}
        )
    except ValueError as e:
        _fail(ConfigError(f"Invalid option: {e}"))

    ensure_directories()
    written = save_config(config, path)
    console.print(f"✅ Configuration written to {written}", style="bold green")
    console.print("\nNext steps:")
    console.print("  kb sources add <id> <name> <base-url>")
    console.print("  kb sync")


@sources_app.command("list")
def sources_list(ctx: typer.Context):
    """List configured sources"""
    config = _load(ctx)
    registry = SourceRegistry(config)

    if not len(registry):
        console.print("No sources configured. Add one with 'kb sources add'.")
        return

    async def _fetch_stats() -> Dict[str, object]:
        async with _open_store(config) as store:
            await registry.register_all(store)
            return {s.source.id: s for s in await store.get_sources_with_stats()}

    try:
        stats = asyncio.run(_fetch_stats())
    except KnowledgeBaseError as e:
        _fail(e)

    table = Table(title="📚 Sources", show_header=True, header_style="bold blue")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("URL")
    table.add_column("Locale")
    table.add_column("Status")
    table.add_column("Articles", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Last Synced")

    for source in registry.all():
        stat = stats.get(source.id)
        last_synced = "Never"
        if stat and stat.source.last_synced_at:
            last_synced = stat.source.last_synced_at.strftime("%Y-%m-%d %H:%M")
        table.add_row(
            source.id,
            source.name,
            source.base_url,
            source.locale,
            "[green]enabled[/green]" if source.enabled else "[dim]disabled[/dim]",
            str(stat.article_count if stat else 0),
            str(stat.chunk_count if stat else 0),
            last_synced,
        )

    console.print(table)


@sources_app.command("add")
def sources_add(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., help="Unique slug, e.g. 'acme'"),
    name: str = typer.Argument(..., help="Display name"),
    base_url: str = typer.Argument(..., help="Help center base URL, e.g. https://support.acme.com"),
    locale: str = typer.Option("en-us", "--locale", "-l", help="Help center locale"),
    skip_check: bool = typer.Option(False, "--skip-check", help="Do not test the connection first"),
):
    """Add a help-center source"""
    config = _load(ctx)
    registry = SourceRegistry(config)

    try:
        source = SourceConfig(id=source_id, name=name, base_url=base_url, locale=locale)
    except ValueError as e:
        _fail(ConfigError(f"Invalid source: {e}"))

    try:
        registry.add(source)
    except ConfigError as e:
        _fail(e)

    if not skip_check:
        async def _check() -> bool:
            async with HelpCenterClient.from_config(config.sync) as client:
                return await client.test_connection(source)

        with console.status(f"[bold blue]Testing connection to {source.base_url}..."):
            reachable = asyncio.run(_check())
        if not reachable:
            console.print(f"❌ Could not reach the help center API at {source.base_url}", style="bold red")
            console.print("Make sure the URL is correct and the help center is public, "
                          "or pass --skip-check.")
            raise typer.Exit(1)

    _save(ctx, registry.to_config())
    console.print(f"✅ Added source [bold]{source.id}[/bold] ({source.base_url})", style="green")
    console.print(f"Run 'kb sync {source.id}' to index it.")


@sources_app.command("remove")
def sources_remove(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., help="Source to remove"),
):
    """Remove a source and its indexed content"""
    config = _load(ctx)
    registry = SourceRegistry(config)

    try:
        registry.remove(source_id)
    except ConfigError as e:
        _fail(e)

    async def _purge() -> bool:
        async with _open_store(config) as store:
            return await store.delete_source(source_id)

    try:
        purged = asyncio.run(_purge())
    except KnowledgeBaseError as e:
        _fail(e)

    _save(ctx, registry.to_config())
    suffix = " and its indexed content" if purged else ""
    console.print(f"✅ Removed source [bold]{source_id}[/bold]{suffix}", style="green")


def _set_enabled(ctx: typer.Context, source_id: str, enabled: bool):
    config = _load(ctx)
    registry = SourceRegistry(config)
    try:
        registry.set_enabled(source_id, enabled)
    except ConfigError as e:
        _fail(e)

    async def _mirror():
        async with _open_store(config) as store:
            await store.set_source_enabled(source_id, enabled)

    try:
        asyncio.run(_mirror())
    except KnowledgeBaseError as e:
        _fail(e)

    _save(ctx, registry.to_config())
    console.print(f"✅ Source [bold]{source_id}[/bold] {'enabled' if enabled else 'disabled'}",
                  style="green")


@sources_app.command("enable")
def sources_enable(ctx: typer.Context, source_id: str = typer.Argument(..., help="Source to enable")):
    """Enable a source"""
    _set_enabled(ctx, source_id, True)


@sources_app.command("disable")
def sources_disable(ctx: typer.Context, source_id: str = typer.Argument(..., help="Source to disable")):
    """Disable a source (kept, but skipped by sync and list)"""
    _set_enabled(ctx, source_id, False)


async def _run_sync(config: AppConfig, sources: List[SourceConfig], full: bool,
                    progress: Progress) -> List[SyncResult]:
    tasks: Dict[str, TaskID] = {}

    def on_progress(source_id: str, update: SyncProgress):
        if source_id not in tasks:
            tasks[source_id] = progress.add_task(update.message, total=None)
        progress.update(
            tasks[source_id],
            description=f"[bold]{source_id}[/bold] {update.phase}: {update.message}",
            completed=update.current,
            total=update.total or None,
        )

    async with _open_store(config) as store, \
            HelpCenterClient.from_config(config.sync) as client, \
            OllamaEmbedder(config.ollama, concurrency=config.sync.embedding_concurrency) as embedder:
        await SourceRegistry(config).register_all(store)
        coordinator = SyncCoordinator(store, client, embedder, config.sync)
        return await coordinator.sync_all(sources, on_progress=on_progress, full_resync=full)


@app.command()
def sync(
    ctx: typer.Context,
    source_ids: Optional[List[str]] = typer.Argument(None, help="Sources to sync (default: all enabled)"),
    full: bool = typer.Option(False, "--full", help="Reprocess every article, ignoring timestamps"),
):
    """Fetch, chunk and embed changed articles"""
    config = _load(ctx)
    registry = SourceRegistry(config)

    try:
        sources = registry.select(source_ids)
    except ConfigError as e:
        _fail(e)

    sources = [s for s in sources if s.enabled]
    if not sources:
        console.print("No enabled sources to sync. Add one with 'kb sources add'.")
        return

    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
        transient=True,
    )
    try:
        with progress:
            results = asyncio.run(_run_sync(config, sources, full, progress))
    except KnowledgeBaseError as e:
        _fail(e)

    table = Table(title="🔄 Sync Summary", show_header=True, header_style="bold blue")
    table.add_column("Source", style="bold")
    table.add_column("Fetched", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Status")

    for result in results:
        if result.error:
            status = f"[red]failed: {result.error}[/red]"
        elif result.up_to_date:
            status = "[dim]up to date[/dim]"
        else:
            status = "[green]ok[/green]"
        table.add_row(
            result.source_id,
            str(result.articles_fetched),
            str(result.articles_processed),
            str(result.articles_deleted),
            str(result.chunks_created),
            f"{result.elapsed_seconds:.1f}s",
            status,
        )

    console.print(table)

    if any(r.error for r in results):
        raise typer.Exit(1)


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Natural language query"),
    source: Optional[List[str]] = typer.Option(None, "--source", "-s", help="Restrict to source id (repeatable)"),
    limit: int = typer.Option(5, "--limit", "-n", min=1, max=20, help="Number of results"),
    no_dedupe: bool = typer.Option(False, "--no-dedupe", help="Show every matching passage"),
):
    """Search the knowledge base"""
    config = _load(ctx)

    async def _search():
        async with _open_store(config) as store, \
                OllamaEmbedder(config.ollama) as embedder:
            engine = SearchEngine(store, embedder)
            return await engine.search(query, limit=limit, sources=source, deduplicate=not no_dedupe)

    with console.status(f"[bold blue]Searching for: {query}"):
        try:
            results = asyncio.run(_search())
        except (KnowledgeBaseError, ValueError) as e:
            _fail(e)

    if not results:
        console.print(f"No results found for '{query}'.")
        return

    console.print(f"\n🔍 Query: [bold]{query}[/bold]")
    console.print(f"📊 Found {len(results)} results\n")

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", style="dim", width=3)
    table.add_column("Title", style="bold")
    table.add_column("Excerpt")
    table.add_column("Source")
    table.add_column("Score", justify="right", width=6)

    for i, result in enumerate(results, 1):
        excerpt = result.excerpt
        table.add_row(
            str(i),
            f"{result.title}\n[dim]{result.url}[/dim]",
            excerpt[:160] + "..." if len(excerpt) > 160 else excerpt,
            result.source_id,
            f"{result.relevance:.0%}",
        )

    console.print(table)


@app.command()
def stats(ctx: typer.Context):
    """Show database and per-source statistics"""
    config = _load(ctx)

    async def _collect():
        async with _open_store(config) as store:
            return await store.get_database_stats(), await store.get_sources_with_stats()

    try:
        totals, per_source = asyncio.run(_collect())
    except KnowledgeBaseError as e:
        _fail(e)

    table = Table(title="📊 Knowledge Base")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Sources", str(totals["sources"]))
    table.add_row("Articles", str(totals["articles"]))
    table.add_row("Chunks", str(totals["chunks"]))
    table.add_row("Embeddings", str(totals["embeddings"]))
    table.add_row("Database size", f"{totals['database_size'] / (1024 * 1024):.2f} MB")
    console.print(table)

    if per_source:
        source_table = Table(title="Per source")
        source_table.add_column("Source", style="bold")
        source_table.add_column("Articles", justify="right")
        source_table.add_column("Chunks", justify="right")
        source_table.add_column("Last Synced")
        for stat in per_source:
            last = stat.source.last_synced_at
            source_table.add_row(
                stat.source.id,
                str(stat.article_count),
                str(stat.chunk_count),
                last.strftime("%Y-%m-%d %H:%M") if last else "Never",
            )
        console.print(source_table)


@app.command()
def doctor(ctx: typer.Context):
    """Check configuration, Ollama, the vector extension and source reachability"""
    state = _state(ctx)
    console.print("\n🏥 Running diagnostics...\n")
    all_good = True

    def ok(message: str):
        console.print(f"[green]✓[/green] {message}")

    def bad(message: str, hint: Optional[str] = None):
        nonlocal all_good
        all_good = False
        console.print(f"[red]✗[/red] {message}")
        if hint:
            console.print(f"    {hint}", style="dim")

    path = state.config_path or get_paths().config_file
    if not config_exists(path):
        bad(f"Configuration file not found at {path}", "Run 'kb init' to create one.")
        raise typer.Exit(1)

    try:
        config = load_config(path)
    except ConfigError as e:
        bad(f"Configuration error: {format_error(e)}")
        raise typer.Exit(1)
    ok("Configuration is valid")

    async def _checks():
        async with OllamaEmbedder(config.ollama) as embedder:
            if await embedder.check_connection():
                ok(f"Ollama running at {config.ollama.base_url}")
                if await embedder.check_model_available():
                    ok(f"Model '{config.ollama.model}' available")
                else:
                    bad(f"Model '{config.ollama.model}' not found",
                        f"Pull it with: ollama pull {config.ollama.model}")
            else:
                bad(f"Cannot connect to Ollama at {config.ollama.base_url}",
                    "Make sure Ollama is running: ollama serve")

        try:
            async with _open_store(config) as store:
                version = await store.vector_extension_version()
                ok(f"Database accessible, sqlite-vec {version} loaded")
        except KnowledgeBaseError as e:
            bad(f"Database error: {format_error(e)}")

        async with HelpCenterClient.from_config(config.sync) as client:
            for source in config.sources:
                if not source.enabled:
                    continue
                if await client.test_connection(source):
                    ok(f"Source '{source.id}' reachable at {source.base_url}")
                else:
                    bad(f"Source '{source.id}' unreachable at {source.base_url}")

    asyncio.run(_checks())

    if all_good:
        console.print("\n✅ All checks passed", style="bold green")
    else:
        console.print("\n❌ Some checks failed", style="bold red")
        raise typer.Exit(1)


@app.command()
def serve(ctx: typer.Context):
    """Start the MCP server on stdio"""
    config = _load(ctx)
    # Imported here so the CLI does not pay for the MCP SDK on every command.
    from helpcenter_kb.server.mcp_server import KnowledgeBaseMCPServer

    log_file = str(ensure_directories().logs_dir / "mcp.log")
    configure_logging(config.logging, verbose=_state(ctx).verbose, log_file=log_file, use_colors=False)

    server = KnowledgeBaseMCPServer(config, db_path=str(ensure_directories().database))
    try:
        asyncio.run(server.run_stdio())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except KnowledgeBaseError as e:
        logger.error(f"MCP server failed: {format_error(e)}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
