"""CLI entry point for capture history.

Search indexed captures, summarize the journal and import exports:
    python -m chat_capture.history search "query"
"""

import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from chat_capture.collector.daemon import build_collector
from chat_capture.collector.journal import CaptureJournal
from chat_capture.config import load_config
from chat_capture.history.importer import import_chatgpt_export
from chat_capture.history.indexer import TypesenseIndexer
from chat_capture.history.stats import journal_stats
from chat_capture.logging import setup_logging


def format_timestamp(ts: int) -> str:
    """Format timestamp for display."""
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def print_message(hit: dict[str, Any], verbose: bool = False) -> None:
    """Print a message search hit."""
    doc = hit["document"]

    # Use highlighted snippet if available
    content = doc["content"]
    for hl in hit.get("highlights", []):
        if hl["field"] == "content":
            content = hl["snippet"]
            break

    content = content.replace("<mark>", "\033[1m").replace("</mark>", "\033[0m")

    click.echo(
        f"\033[36m[{format_timestamp(doc['captured_ts'])}]\033[0m "
        f"\033[32m{doc['service_id']}\033[0m ({doc['role']})"
    )
    if doc.get("conversation_id"):
        click.echo(f"Conversation: {doc['conversation_id']}")
    if verbose:
        click.echo(f"Source: {doc['source']}")
        click.echo(f"URL: {doc.get('url') or 'unknown'}")

    click.echo(f"\n{content}\n")
    click.echo("-" * 40)


@click.group()
def cli() -> None:
    """Browse captured chat history."""
    setup_logging("history")


@cli.command()
@click.argument("query")
@click.option("--service", help="Filter by service hostname (e.g. chatgpt.com)")
@click.option("--role", type=click.Choice(["user", "assistant"]), help="Filter by role")
@click.option("--limit", "-n", default=10, help="Number of results")
@click.option("--verbose", "-v", is_flag=True, help="Show more details")
def search(query: str, service: str | None, role: str | None, limit: int, verbose: bool) -> None:
    """Search captured messages."""
    config = load_config()
    indexer = TypesenseIndexer(config.typesense)

    filters = {}
    if service:
        filters["service_id"] = service
    if role:
        filters["role"] = role

    try:
        results = indexer.search_messages(query, per_page=limit, filters=filters)
    except Exception as e:
        click.echo(f"Error searching messages: {e}", err=True)
        sys.exit(1)

    hits = results.get("hits", [])
    click.echo(f"Found {results.get('found', 0)} messages (showing {len(hits)}):\n")

    for hit in hits:
        print_message(hit, verbose)


@cli.command()
def stats() -> None:
    """Summarize the capture journal."""
    config = load_config()
    summary = journal_stats(CaptureJournal(config.storage.journal_path))

    click.echo(f"Messages: {summary.total}")
    click.echo(f"Conversations: {summary.conversations}")
    if not summary.total:
        return

    click.echo("\nBy service:")
    for service_id, count in summary.by_service.most_common():
        click.echo(f"  {service_id}: {count}")
    click.echo("\nBy role:")
    for role, count in summary.by_role.most_common():
        click.echo(f"  {role}: {count}")
    click.echo("\nBy source:")
    for source, count in summary.by_source.most_common():
        click.echo(f"  {source}: {count}")


@cli.command("import-chatgpt")
@click.argument("export_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_chatgpt(export_file: Path) -> None:
    """Import a ChatGPT conversations.json export."""
    config = load_config()
    collector = build_collector(config)

    try:
        result = import_chatgpt_export(collector, export_file)
    except (OSError, ValueError) as e:
        click.echo(f"Import failed: {e}", err=True)
        sys.exit(1)
    finally:
        collector.index.close()

    click.echo(
        f"Imported {result.messages} messages from {result.conversations} conversations "
        f"({result.duplicates} already captured)"
    )
    for error in result.errors:
        click.echo(f"  {error}", err=True)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
