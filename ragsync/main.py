"""
ragsync - CLI Entry Point
--------------------------
Typer commands over a RagService built from the environment.

Usage:
    python -m ragsync.main ask "How do I rotate keys?" --team t1
    python -m ragsync.main search "key rotation" --team t1 -k 5
    python -m ragsync.main reindex <document-id> --force
    python -m ragsync.main index-all --team t1
    python -m ragsync.main status --team t1
    python -m ragsync.main serve --port 8000
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import asyncio
from typing import Optional

import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ragsync.errors import ConfigurationError
from ragsync.schemas import ChunkEvent, ErrorEvent, SourcesEvent
from ragsync.service import RagService
from ragsync.utils.helpers import truncate_text
from ragsync.utils.logger import setup_logger

app = typer.Typer(
    name="ragsync",
    help="Incremental document indexing and grounded chat",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _shorten(text: str, width: int) -> str:
    return truncate_text(" ".join(text.split()), width)


async def _with_service(fn):
    service = await RagService.create()
    try:
        return await fn(service)
    finally:
        await service.close()


def _run(fn) -> None:
    setup_logger(log_level="WARNING")
    try:
        asyncio.run(_with_service(fn))
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


# --- Commands -----------------------------------------------------------------

@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to answer from the indexed documents"),
    team: Optional[str] = typer.Option(None, "--team", "-t", help="Tenant (team) id"),
    collection: Optional[list[str]] = typer.Option(
        None, "--collection", "-c", help="Restrict to collection id (repeatable)"
    ),
    k: Optional[int] = typer.Option(None, "-k", min=1, max=20, help="Chunks to retrieve"),
) -> None:
    """Stream a grounded answer, then list the sources it used."""

    async def _ask(service: RagService) -> None:
        sources = []
        console.print()
        async for event in service.stream_answer(question, k, (), collection, team):
            if isinstance(event, SourcesEvent):
                sources = event.data
            elif isinstance(event, ChunkEvent):
                console.print(event.data, end="", soft_wrap=True, markup=False, highlight=False)
            elif isinstance(event, ErrorEvent):
                console.print(f"\n[red]Stream failed:[/red] {event.data}")
        console.print("\n")

        if sources:
            table = Table("No.", "Title", "Excerpt", "Score", box=box.SIMPLE, header_style="bold dim")
            for i, source in enumerate(sources, start=1):
                table.add_row(
                    str(i),
                    _shorten(str(source.metadata.get("documentTitle", "")), 40),
                    _shorten(source.content, 60),
                    f"{source.score:.3f}",
                )
            console.print(table)

    _run(_ask)


@app.command()
def search(
    query: str = typer.Argument(...),
    team: Optional[str] = typer.Option(None, "--team", "-t"),
    k: Optional[int] = typer.Option(None, "-k", min=1, max=20),
) -> None:
    """Raw similarity search with distances (lower is closer)."""

    async def _search(service: RagService) -> None:
        search_filter = {"teamId": team} if team else None
        results = await service.similarity_search_with_score(query, k, search_filter, team)
        table = Table("Document", "Ordinal", "Excerpt", "Distance", box=box.SIMPLE, header_style="bold dim")
        for chunk, score in results:
            table.add_row(
                str(chunk.document_id),
                str(chunk.chunk_ordinal),
                _shorten(chunk.content, 70),
                f"{score:.4f}",
            )
        console.print(table)

    _run(_search)


@app.command()
def reindex(
    document_id: str = typer.Argument(...),
    force: bool = typer.Option(False, "--force", help="Reindex even when the stored copy is current"),
) -> None:
    """Re-chunk and re-embed one document now."""

    async def _reindex(service: RagService) -> None:
        chunks = await service.reindex(document_id, force=force)
        console.print(f"[green][OK][/green] {document_id}: {chunks} chunks written")

    _run(_reindex)


@app.command("index-all")
def index_all(
    team: str = typer.Option(..., "--team", "-t"),
    collection: Optional[str] = typer.Option(None, "--collection", "-c"),
    force: bool = typer.Option(False, "--force"),
) -> None:
    """Queue every published document of a team and process the queue."""

    async def _index_all(service: RagService) -> None:
        result = await service.index_all(team, collection, force)
        console.print(f"[cyan]Queued {result['queued']}/{result['total']} documents[/cyan]")
        with console.status("[cyan]Indexing...[/cyan]"):
            processed = await service.run_pending()
        console.print(f"[green][OK][/green] {processed} jobs processed")

    _run(_index_all)


@app.command()
def status(team: str = typer.Option(..., "--team", "-t")) -> None:
    """Show indexed documents and in-flight indexing work for a team."""

    async def _status(service: RagService) -> None:
        projection = await service.get_indexing_status(team)

        table = Table("Document", "Title", "Chunks", "Status", "Updated", box=box.SIMPLE, header_style="bold dim")
        for row in projection.indexing:
            colour = "red" if row.status == "failed" else "yellow"
            table.add_row(
                row.document_id,
                _shorten(row.document_title or "", 40),
                str(row.chunks),
                f"[{colour}]{row.status.value}[/{colour}]" + (f" ({row.error})" if row.error else ""),
                "",
            )
        for row in projection.indexed:
            table.add_row(
                row.document_id,
                _shorten(row.document_title or "", 40),
                str(row.chunks),
                "[green]indexed[/green]",
                row.updated_at or "",
            )

        console.print(
            Panel(
                f"[bold]{len(projection.indexed)}[/bold] indexed  |  "
                f"[bold]{len(projection.indexing)}[/bold] in flight",
                title=f"[bold cyan]Team {team}[/bold cyan]",
                expand=False,
            )
        )
        console.print(table)

    _run(_status)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    logger.info(f"[CLI] Serving on {host}:{port}")
    uvicorn.run("app.server:app", host=host, port=port, reload=reload)


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
