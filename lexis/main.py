"""
Lexis Reader - CLI Entry Point
------------------------------
Typer commands over the reader core.

Usage:
    python -m lexis.main search "pride and prejudice"   # Gutendex catalogue search
    python -m lexis.main chapters 1342                  # List detected chapters
    python -m lexis.main read 1342 --chapter 2          # Annotated paragraphs of a chapter
    python -m lexis.main read --local book.txt          # Same, for a text file on disk
    python -m lexis.main vocab                          # Words encountered so far
    python -m lexis.main check-key                      # Verify the DeepSeek API key
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix: force UTF-8 so target-language diacritics
# do not crash the Rich console renderer.
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import asyncio
from datetime import datetime
from typing import Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from lexis.collection.base_source import BaseTextSource
from lexis.collection.gutenberg_source import GutenbergSource
from lexis.collection.local_source import LocalTextSource
from lexis.config import DEFAULT_CONFIG_PATH, MAX_DENSITY, MIN_DENSITY, get_api_key, load_config
from lexis.enrichment.client import DeepSeekEnrichmentClient
from lexis.errors import EnrichmentCallFailed, LexisError
from lexis.reader.session import ReaderSession
from lexis.schemas import Book, ParagraphState, ParagraphStatus, Segment, SegmentLanguage
from lexis.storage.vocabulary import VocabularyStore
from lexis.utils.helpers import shorten
from lexis.utils.logger import setup_logger

app = typer.Typer(
    name="lexis",
    help="Lexis - read public-domain books with in-place target-language substitutions",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _bootstrap(config_path: str) -> dict:
    cfg = load_config(config_path)
    log_cfg = cfg.get("logging", {})
    setup_logger(log_cfg.get("level", "INFO"), log_cfg.get("file"))
    return cfg


async def _resolve_book(
    cfg: dict, book_id: Optional[int], local: Optional[str]
) -> tuple[BaseTextSource, Book]:
    if local:
        return LocalTextSource(cfg["source"]), LocalTextSource.book_for(local)
    if book_id is None:
        console.print("[red]Give a Gutenberg book id or --local PATH[/red]")
        raise typer.Exit(1)
    source = GutenbergSource(cfg["source"])
    try:
        return source, await source.get_book(book_id)
    except LexisError as exc:
        console.print(f"[red]Book lookup failed:[/red] {exc}")
        raise typer.Exit(1)


def _render_paragraph(index: int, state: ParagraphState) -> Text:
    text = Text(f"{index + 1:>3}  ", style="dim")
    if state.status is not ParagraphStatus.DONE or not state.segments:
        text.append(state.raw)
        if state.status is ParagraphStatus.ERROR:
            text.append("  [error]", style="red")
        return text
    for seg in state.segments:
        if seg.language is SegmentLanguage.TARGET:
            text.append(seg.text, style="bold magenta")
            if seg.source_base_form:
                text.append(f" ({seg.source_base_form})", style="dim magenta")
        else:
            text.append(seg.text)
    return text


# --- Commands -----------------------------------------------------------------

@app.command()
def search(
    query: str = typer.Argument("", help="Title or author words (empty lists popular books)"),
    page: int = typer.Option(1, "--page", "-p", help="Result page"),
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config YAML"),
) -> None:
    """Search the Project Gutenberg catalogue."""
    cfg = _bootstrap(config)
    try:
        result = asyncio.run(GutenbergSource(cfg["source"]).search_books(query, page))
    except LexisError as exc:
        console.print(f"[red]Search failed:[/red] {exc}")
        raise typer.Exit(1)

    table = Table("ID", "Title", "Author", "Downloads", box=box.SIMPLE, header_style="bold dim")
    for book in result.results:
        author = book.authors[0].name if book.authors else "-"
        table.add_row(book.document_id, shorten(book.title), author, f"{book.download_count:,}")
    console.print(table)
    console.print(f"[dim]{result.count:,} matching books | page {page}[/dim]")


@app.command()
def chapters(
    book_id: Optional[int] = typer.Argument(None, help="Gutenberg book id"),
    local: Optional[str] = typer.Option(None, "--local", "-l", help="Plain-text file on disk"),
    no_markers: bool = typer.Option(False, "--no-markers", help="Text has no START/END licence markers"),
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config YAML"),
) -> None:
    """List the chapters detected in a book."""
    cfg = _bootstrap(config)
    if no_markers:
        cfg["parser"]["require_start_marker"] = False
    asyncio.run(_chapters_async(cfg, book_id, local))


async def _chapters_async(cfg: dict, book_id: Optional[int], local: Optional[str]) -> None:
    source, book = await _resolve_book(cfg, book_id, local)
    session = ReaderSession.from_config(cfg, source, client=_NullClient())
    try:
        with console.status(f"[cyan]Streaming '{book.title}'...[/cyan]"):
            await session.open_book(book)
            await session.wait_loaded()
    except LexisError as exc:
        console.print(f"[red]Failed to load book text:[/red] {exc}")
        raise typer.Exit(1)
    finally:
        await session.close()

    table = Table("No.", "Title", "Paragraphs", box=box.SIMPLE, header_style="bold dim")
    for i, chunk in enumerate(session.chunks):
        table.add_row(str(i), chunk.title, str(len(chunk.paragraphs)))
    console.print(Panel(f"[bold]{book.title}[/bold]", expand=False))
    console.print(table)


@app.command()
def read(
    book_id: Optional[int] = typer.Argument(None, help="Gutenberg book id"),
    local: Optional[str] = typer.Option(None, "--local", "-l", help="Plain-text file on disk"),
    chapter: int = typer.Option(0, "--chapter", help="Chapter index (see 'chapters')"),
    density: Optional[int] = typer.Option(
        None, "--density", "-d", min=MIN_DENSITY, max=MAX_DENSITY, help="Percent of words to substitute"
    ),
    paragraphs: int = typer.Option(5, "--paragraphs", "-n", help="Paragraphs to annotate"),
    no_markers: bool = typer.Option(False, "--no-markers", help="Text has no START/END licence markers"),
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config YAML"),
) -> None:
    """
    Print the first paragraphs of a chapter with substitutions applied.

    \b
    Steps:
      1. Stream the book text and detect chapters
      2. Activate the requested chapter
      3. Annotate paragraphs (cache first, at most two calls in flight)
      4. Record new target words in the vocabulary store
    """
    cfg = _bootstrap(config)
    if no_markers:
        cfg["parser"]["require_start_marker"] = False
    if density is not None:
        cfg["scheduler"]["default_density"] = density
    if not get_api_key():
        console.print("[yellow]DEEPSEEK_API_KEY is not set - paragraphs will be shown unannotated[/yellow]")
    asyncio.run(_read_async(cfg, book_id, local, chapter, paragraphs))


async def _read_async(
    cfg: dict, book_id: Optional[int], local: Optional[str], chapter: int, count: int
) -> None:
    source, book = await _resolve_book(cfg, book_id, local)
    session = ReaderSession.from_config(cfg, source)
    try:
        with console.status(f"[cyan]Streaming '{book.title}'...[/cyan]"):
            await session.open_book(book)
            await session.wait_first_chunk()
            if chapter > 0:
                await session.wait_loaded()

        if not session.navigate_to_chapter(chapter):
            console.print(f"[red]No chapter {chapter}[/red] (book has {session.chapter_count})")
            raise typer.Exit(1)

        title = session.chunks[chapter].title
        console.print()
        console.print(
            Panel(
                f"[bold cyan]{book.title}[/bold cyan]\n[white]{title}[/white]",
                box=box.DOUBLE_EDGE,
                expand=False,
            )
        )

        started = datetime.now()
        with console.status("[cyan]Annotating...[/cyan]"):
            for i in range(min(count, len(session.paragraphs))):
                session.scheduler.enqueue(i)
            await session.scheduler.join()

        for i, state in enumerate(session.paragraphs[:count]):
            console.print(_render_paragraph(i, state))
            console.print()

        cache = session.scheduler.cache
        elapsed = (datetime.now() - started).total_seconds()
        console.print(
            f"[dim]density={session.density}%  cache hits={cache.hits} misses={cache.misses}  "
            f"time={elapsed:.1f}s[/dim]\n"
        )
    except LexisError as exc:
        console.print(f"[red]Failed to load book text:[/red] {exc}")
        raise typer.Exit(1)
    finally:
        await session.close()


@app.command()
def vocab(
    clear: bool = typer.Option(False, "--clear", help="Forget every recorded word"),
    limit: int = typer.Option(50, "--limit", help="Rows to show"),
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config YAML"),
) -> None:
    """Show the target-language words encountered so far."""
    cfg = _bootstrap(config)
    store = VocabularyStore(cfg["vocabulary"].get("path"))
    if clear:
        store.clear()
        console.print("[green][OK] Vocabulary cleared[/green]")
        return
    if not len(store):
        console.print("[yellow]No words recorded yet.  Run: python -m lexis.main read <id>[/yellow]")
        return

    table = Table("Word", "Base form", "Seen", "Last seen", box=box.SIMPLE, header_style="bold dim")
    for entry in sorted(store.entries(), key=lambda e: -e.count)[:limit]:
        last = datetime.fromtimestamp(entry.last_seen / 1000).strftime("%Y-%m-%d %H:%M")
        table.add_row(entry.target_word, entry.source_base_form or "-", str(entry.count), last)
    console.print(table)
    console.print(f"[dim]{len(store)} words total[/dim]")


@app.command("check-key")
def check_key(
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config YAML"),
) -> None:
    """Make one minimal call to verify the DeepSeek API key."""
    cfg = _bootstrap(config)
    api_key = get_api_key()
    if not api_key:
        console.print("[red]DEEPSEEK_API_KEY is not set[/red] (export it or add it to .env)")
        raise typer.Exit(1)

    client = DeepSeekEnrichmentClient.from_config(cfg["enrichment"], api_key=api_key)
    try:
        asyncio.run(client.test_connection())
    except EnrichmentCallFailed as exc:
        console.print(f"[red]Connection failed:[/red] {exc}")
        raise typer.Exit(1)
    console.print(f"[green][OK] {client.model} reachable[/green]")


class _NullClient:
    """Enrichment stand-in for commands that never annotate."""

    async def enrich(self, text: str, density: int, hints: Sequence[str] = ()) -> list[Segment]:
        raise EnrichmentCallFailed("annotation disabled")


if __name__ == "__main__":
    app()
