# =============================================================================
# Command-Line Interface: `ledger-qa`
# =============================================================================
#
#   ledger-qa ask What is our cash balance?   → greets on stderr, prints the answer
#   ledger-qa index [--strategy bounded]     → (re)builds the Documents
#   ledger-qa count                          → number of stored Documents
#
# EXIT CODES: 0 on success, 1 on a missing question or any failure. This
# is the single place that decides exit behaviour; components raise.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Optional

import typer

from ledger_qa.config import settings
from ledger_qa.errors import LedgerQAError

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="ledger-qa",
    help="Ask questions about the business's financial records.",
    add_completion=False,
)


@app.callback()
def main_callback(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log at DEBUG level."),
    ] = False,
) -> None:
    """Ledger Q&A: retrieval-grounded answers over financial records."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("ask")
def ask_cmd(
    question: Annotated[
        Optional[list[str]],
        typer.Argument(help="The question; words are joined with spaces."),
    ] = None,
    scope: Annotated[
        Optional[str],
        typer.Option("--scope", help="Scope (user) id. Defaults to DEFAULT_SCOPE_ID."),
    ] = None,
) -> None:
    """Answer one question from the indexed records."""
    text = " ".join(question or []).strip()
    if not text:
        typer.echo('Usage: ledger-qa ask "Your financial question here"', err=True)
        raise typer.Exit(code=1)

    try:
        result = asyncio.run(_ask(text, scope or settings.default_scope_id))
    except (LedgerQAError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    typer.echo(result.answer)
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}", err=True)


@app.command("index")
def index_cmd(
    strategy: Annotated[
        Optional[str],
        typer.Option(
            "--strategy",
            help="'sequential' or 'bounded'. Defaults to INDEX_STRATEGY.",
        ),
    ] = None,
) -> None:
    """Serialise, embed and upsert every row of every configured table."""
    if strategy is not None and strategy not in ("sequential", "bounded"):
        typer.echo(f"Error: unknown strategy {strategy!r}", err=True)
        raise typer.Exit(code=1)

    try:
        report = asyncio.run(_index(strategy))
    except (LedgerQAError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    for table in report.tables:
        typer.echo(
            f"{table.table}: {table.rows} rows, {table.upserted} upserted, "
            f"{table.unchanged} unchanged"
        )
    typer.echo(
        f"Total: {report.rows} rows, {report.upserted} upserted, "
        f"{report.unchanged} unchanged"
    )


@app.command("count")
def count_cmd() -> None:
    """Print the number of stored Documents."""
    try:
        total = asyncio.run(_count())
    except (LedgerQAError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(f"Total documents: {total}")


# ---------------------------------------------------------------------------
# Async bodies: each owns one event loop and disposes the engine with it
# ---------------------------------------------------------------------------


async def _ask(question: str, scope_id: str):
    from ledger_qa.agents.orchestrator import build_orchestrator
    from ledger_qa.db.engine import dispose_engine

    try:
        typer.echo(f"Hello {await _profile_name(scope_id)}!", err=True)
        return await build_orchestrator(settings).answer(question, scope_id)
    finally:
        await dispose_engine()


async def _profile_name(scope_id: str) -> str:
    """Name from the scope's profile row; "there" when missing or unreachable."""
    from ledger_qa.services.source_store import build_source_store

    try:
        profile = await build_source_store(settings).fetch_one(
            "profiles", scope_id, ("name",),
        )
    except LedgerQAError as e:
        logger.warning("Profile lookup for %s failed, greeting anonymously: %s", scope_id, e)
        return "there"
    return (profile or {}).get("name") or "there"


async def _index(strategy: str | None):
    from ledger_qa.db.engine import dispose_engine
    from ledger_qa.services.indexer import build_indexer

    try:
        return await build_indexer(settings, strategy=strategy).run()
    finally:
        await dispose_engine()


async def _count() -> int:
    from ledger_qa.db.engine import dispose_engine
    from ledger_qa.services.document_store import get_document_store

    try:
        return await get_document_store(settings).count()
    finally:
        await dispose_engine()


if __name__ == "__main__":
    app()
