"""CLI entry point for the IdeaGraph thesis knowledge base."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ideagraph.config import DEFAULT_CONFIG_PATH, Settings, load_config
from ideagraph.knowledge_base.blob_store import PDFBlobStore
from ideagraph.knowledge_base.errors import IdeaGraphError
from ideagraph.knowledge_base.models import (
    ConnectionType,
    ExclusionReason,
    ReadingStatus,
    ScreeningDecision,
    ThesisRole,
)
from ideagraph.knowledge_base.persistence import PersistenceAdapter
from ideagraph.knowledge_base.store import EntityStore
from ideagraph.synthesis.gap_detector import detect_gaps

console = Console()
logger = logging.getLogger("ideagraph")


def setup_logging(verbose: bool = False, level_name: str = "INFO") -> None:
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def get_adapter(settings: Settings) -> PersistenceAdapter:
    return PersistenceAdapter(
        db_path=settings.storage.db_path,
        namespace=settings.storage.namespace,
        quota_bytes=settings.storage.quota_bytes,
    )


def get_store(settings: Settings) -> EntityStore:
    store = EntityStore(get_adapter(settings))
    result = store.init()
    if not result.success:
        console.print("[yellow]Startup completed with problems:[/yellow]")
        for err in result.errors:
            console.print(f"  [red]- {err}[/red]")
        if store.read_only:
            console.print("[yellow]Store is read-only for this session.[/yellow]")
    return store


def resolve_thesis(store: EntityStore, thesis_id: str | None) -> str:
    thesis_id = thesis_id or store.active_thesis_id
    if not thesis_id:
        raise click.UsageError("No thesis given and no active thesis set. Use --thesis or 'thesis activate'.")
    return thesis_id


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--config",
    "config_path",
    default=str(DEFAULT_CONFIG_PATH),
    type=click.Path(dir_okay=False),
    help="Path to the YAML config file",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str) -> None:
    """IdeaGraph: a local knowledge base for literature reviews."""
    settings = load_config(config_path)
    setup_logging(verbose, settings.log_level)
    ctx.obj = settings


# --- Schema commands ---


@main.command()
@click.pass_obj
def migrate(settings: Settings) -> None:
    """Bring the stored data up to the current schema version."""
    store = EntityStore(get_adapter(settings))
    try:
        result = store.init()
        console.print(Panel("[bold]Migration Results[/bold]"))
        console.print(f"From version: {result.from_version}")
        console.print(f"To version: {result.to_version}")
        if result.migrations_applied:
            console.print(f"Applied: {', '.join(str(v) for v in result.migrations_applied)}")
        else:
            console.print("No migrations needed.")
        if result.success:
            console.print("[green]Schema is up to date[/green]")
        else:
            for err in result.errors:
                console.print(f"  [red]- {err}[/red]")
            sys.exit(1)
    finally:
        store.adapter.close()


@main.command()
@click.pass_obj
def check(settings: Settings) -> None:
    """Report referential-integrity problems in the stored data."""
    store = get_store(settings)
    try:
        problems = store.integrity_report()
        if not problems:
            console.print("[green]No integrity problems found[/green]")
            return
        console.print(f"[red]{len(problems)} integrity problem(s):[/red]")
        for problem in problems:
            console.print(f"  - {problem}")
        sys.exit(1)
    finally:
        store.adapter.close()


# --- Thesis commands ---


@main.group()
def thesis() -> None:
    """Create, list and delete theses."""


@thesis.command("create")
@click.argument("title")
@click.option("--description", default="", help="Longer description of the research question")
@click.option("--activate", is_flag=True, help="Make the new thesis the active one")
@click.pass_obj
def thesis_create(settings: Settings, title: str, description: str, activate: bool) -> None:
    store = get_store(settings)
    try:
        created = store.create_thesis({"title": title, "description": description})
        if activate:
            store.set_active_thesis(created.id)
        console.print(f"[green]Created thesis: {created.title}[/green]")
        console.print(f"  ID: {created.id}")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


@thesis.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include archived theses")
@click.pass_obj
def thesis_list(settings: Settings, show_all: bool) -> None:
    store = get_store(settings)
    try:
        theses = store.list_theses(include_archived=show_all)
        if not theses:
            console.print("[yellow]No theses yet. Run 'thesis create' first.[/yellow]")
            return
        table = Table(title="Theses")
        table.add_column("", width=1)
        table.add_column("ID", style="dim", max_width=12)
        table.add_column("Title", max_width=50)
        table.add_column("Papers", justify="right")
        table.add_column("Connections", justify="right")
        for t in theses:
            marker = "*" if t.id == store.active_thesis_id else ""
            title = f"{t.title} [dim](archived)[/dim]" if t.is_archived else t.title
            table.add_row(marker, t.id[:12], title, str(len(t.paper_ids)), str(len(t.connection_ids)))
        console.print(table)
    finally:
        store.adapter.close()


@thesis.command("delete")
@click.argument("thesis_id")
@click.confirmation_option(prompt="Delete this thesis and everything in it?")
@click.pass_obj
def thesis_delete(settings: Settings, thesis_id: str) -> None:
    store = get_store(settings)
    try:
        store.delete_thesis(thesis_id)
        console.print(f"[green]Deleted thesis {thesis_id}[/green]")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


@thesis.command("activate")
@click.argument("thesis_id")
@click.pass_obj
def thesis_activate(settings: Settings, thesis_id: str) -> None:
    store = get_store(settings)
    try:
        store.set_active_thesis(thesis_id)
        console.print(f"[green]Active thesis: {thesis_id}[/green]")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


# --- Paper commands ---


@main.group()
def paper() -> None:
    """Add, triage and remove papers."""


@paper.command("add")
@click.argument("title")
@click.option("--thesis", "thesis_id", default=None, help="Thesis ID (defaults to the active thesis)")
@click.option("--author", "authors", multiple=True, help="Author name (repeatable)")
@click.option("--year", type=int, default=None)
@click.option("--doi", default=None)
@click.option("--journal", default=None)
@click.option("--role", type=click.Choice([r.value for r in ThesisRole]), default=ThesisRole.OTHER.value)
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.pass_obj
def paper_add(
    settings: Settings,
    title: str,
    thesis_id: str | None,
    authors: tuple[str, ...],
    year: int | None,
    doi: str | None,
    journal: str | None,
    role: str,
    tags: tuple[str, ...],
) -> None:
    store = get_store(settings)
    try:
        thesis_id = resolve_thesis(store, thesis_id)
        if doi and store.index.has_paper_with_doi(thesis_id, doi):
            console.print(f"[yellow]A paper with DOI {doi} is already in this thesis[/yellow]")
        added = store.add_paper({
            "thesis_id": thesis_id,
            "title": title,
            "authors": [{"name": a} for a in authors],
            "year": year,
            "doi": doi,
            "journal": journal,
            "thesis_role": role,
            "tags": list(tags),
        })
        console.print(f"[green]Added paper: {added.title}[/green]")
        console.print(f"  ID: {added.id}")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


@paper.command("list")
@click.option("--thesis", "thesis_id", default=None, help="Thesis ID (defaults to the active thesis)")
@click.option(
    "--screening",
    type=click.Choice([d.value for d in ScreeningDecision]),
    default=None,
    help="Only papers with this screening decision",
)
@click.pass_obj
def paper_list(settings: Settings, thesis_id: str | None, screening: str | None) -> None:
    store = get_store(settings)
    try:
        thesis_id = resolve_thesis(store, thesis_id)
        papers = store.get_papers_for_thesis(thesis_id)
        if screening:
            papers = [p for p in papers if p.screening_decision.value == screening]
        if not papers:
            console.print("[yellow]No papers found.[/yellow]")
            return
        table = Table(title=f"Papers ({len(papers)})")
        table.add_column("ID", style="dim", max_width=12)
        table.add_column("Title", max_width=50)
        table.add_column("Year", justify="right")
        table.add_column("Role")
        table.add_column("Reading")
        table.add_column("Screening")
        for p in papers:
            table.add_row(
                p.id[:12],
                p.title[:50],
                str(p.year or "-"),
                p.thesis_role.value,
                p.reading_status.value,
                p.screening_decision.value,
            )
        console.print(table)
    finally:
        store.adapter.close()


@paper.command("screen")
@click.argument("paper_ids", nargs=-1, required=True)
@click.option("--decision", type=click.Choice([d.value for d in ScreeningDecision]), required=True)
@click.option("--reason", type=click.Choice([r.value for r in ExclusionReason]), default=None)
@click.pass_obj
def paper_screen(settings: Settings, paper_ids: tuple[str, ...], decision: str, reason: str | None) -> None:
    """Record a screening decision for one or more papers."""
    store = get_store(settings)
    try:
        updated = store.set_screening_decision_batch(list(paper_ids), decision, reason)
        console.print(f"[green]Marked {len(updated)} paper(s) as {decision}[/green]")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


@paper.command("status")
@click.argument("paper_id")
@click.argument("status", type=click.Choice([s.value for s in ReadingStatus]))
@click.pass_obj
def paper_status(settings: Settings, paper_id: str, status: str) -> None:
    """Set the reading status of a paper."""
    store = get_store(settings)
    try:
        updated = store.set_reading_status(paper_id, status)
        console.print(f"[green]{updated.title[:60]}: {updated.reading_status.value}[/green]")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


@paper.command("delete")
@click.argument("paper_ids", nargs=-1, required=True)
@click.pass_obj
def paper_delete(settings: Settings, paper_ids: tuple[str, ...]) -> None:
    """Delete papers along with their connections and references."""
    store = get_store(settings)
    try:
        store.delete_papers_batch(list(paper_ids))
        console.print(f"[green]Deleted {len(paper_ids)} paper(s)[/green]")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


@paper.command("attach")
@click.argument("paper_id")
@click.argument("source")
@click.pass_obj
def paper_attach(settings: Settings, paper_id: str, source: str) -> None:
    """Attach a PDF to a paper from a local file or an http(s) URL."""
    store = get_store(settings)
    try:
        if store.get_paper(paper_id) is None:
            console.print(f"[red]Paper {paper_id} not found[/red]")
            sys.exit(1)
        blobs = PDFBlobStore(settings.storage.pdf_dir)
        if source.startswith(("http://", "https://")):
            meta = blobs.store_from_url(paper_id, source)
            if meta is None:
                console.print(f"[red]Could not download a PDF from {source}[/red]")
                sys.exit(1)
        else:
            path = Path(source)
            if not path.is_file():
                console.print(f"[red]File not found: {source}[/red]")
                sys.exit(1)
            try:
                meta = blobs.store(paper_id, path.read_bytes(), filename=path.name)
            except ValueError as e:
                console.print(f"[red]{e}[/red]")
                sys.exit(1)
        console.print(f"[green]Attached {meta.filename} ({meta.file_size} bytes)[/green]")
    finally:
        store.adapter.close()


# --- Connections ---


@main.command()
@click.argument("from_paper_id")
@click.argument("to_paper_id")
@click.option("--type", "conn_type", type=click.Choice([t.value for t in ConnectionType]), required=True)
@click.option("--note", default=None)
@click.pass_obj
def connect(settings: Settings, from_paper_id: str, to_paper_id: str, conn_type: str, note: str | None) -> None:
    """Link two papers of the same thesis."""
    store = get_store(settings)
    try:
        source = store.get_paper(from_paper_id)
        if source is None:
            console.print(f"[red]Paper {from_paper_id} not found[/red]")
            sys.exit(1)
        created = store.create_connection({
            "thesis_id": source.thesis_id,
            "from_paper_id": from_paper_id,
            "to_paper_id": to_paper_id,
            "type": conn_type,
            "note": note,
        })
        console.print(f"[green]Connected ({created.type.value}): {created.id}[/green]")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


# --- Analysis ---


@main.command()
@click.option("--thesis", "thesis_id", default=None, help="Thesis ID (defaults to the active thesis)")
@click.pass_obj
def stats(settings: Settings, thesis_id: str | None) -> None:
    """Show screening and reading statistics for a thesis."""
    store = get_store(settings)
    try:
        thesis_id = resolve_thesis(store, thesis_id)
        found = store.get_thesis(thesis_id)
        if found is None:
            console.print(f"[red]Thesis {thesis_id} not found[/red]")
            sys.exit(1)
        screening = store.get_screening_stats(thesis_id)
        progress = store.get_reading_progress(thesis_id)

        console.print(Panel(f"[bold]{found.title}[/bold]"))
        table = Table(title="Screening")
        table.add_column("Decision")
        table.add_column("Papers", justify="right")
        for decision, count in screening.items():
            table.add_row(decision, str(count))
        console.print(table)
        console.print(f"Reading progress: {progress:.0%}")
        console.print(f"Connections: {len(store.index.connections_for_thesis(thesis_id))}")

        clusters = store.index.argument_clusters(thesis_id)
        if clusters:
            console.print("\n[bold]Shared arguments:[/bold]")
            for c in clusters[:10]:
                console.print(f"  - {c.claim[:70]} ({len(c.paper_ids)} papers, {c.agreement})")
    finally:
        store.adapter.close()


@main.command()
@click.option("--thesis", "thesis_id", default=None, help="Thesis ID (defaults to the active thesis)")
@click.option("--save", is_flag=True, help="Store the detected gaps")
@click.pass_obj
def gaps(settings: Settings, thesis_id: str | None, save: bool) -> None:
    """Detect research gaps in the included papers of a thesis."""
    store = get_store(settings)
    try:
        thesis_id = resolve_thesis(store, thesis_id)
        detected = detect_gaps(store, thesis_id)
        if not detected:
            console.print("[yellow]No new gaps detected.[/yellow]")
            return
        table = Table(title="Detected Research Gaps")
        table.add_column("Type")
        table.add_column("Priority")
        table.add_column("Title", max_width=50)
        table.add_column("Papers", justify="right")
        for gap in detected:
            table.add_row(gap.type.value, gap.priority.value, gap.title, str(len(gap.related_paper_ids)))
        console.print(table)
        if save:
            for gap in detected:
                store.create_gap(gap.model_dump(exclude={"id", "created_at"}))
            console.print(f"[green]Saved {len(detected)} gap(s)[/green]")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


# --- Import / export ---


@main.command("export")
@click.option("--output", "-o", default="output/ideagraph-export.json", help="Output file path")
@click.pass_obj
def export_cmd(settings: Settings, output: str) -> None:
    """Export the whole knowledge base as JSON."""
    store = get_store(settings)
    try:
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(store.export_data(), encoding="utf-8")
        console.print(f"[green]Exported to: {output_path}[/green]")
    finally:
        store.adapter.close()


@main.command("import")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False))
@click.confirmation_option(prompt="Replace all stored data with the imported file?")
@click.pass_obj
def import_cmd(settings: Settings, input_path: str) -> None:
    """Replace the knowledge base with a previously exported JSON file."""
    store = get_store(settings)
    try:
        result = store.import_data(Path(input_path).read_text(encoding="utf-8"))
        console.print(f"[green]Imported data at schema v{result.to_version}[/green]")
        if result.migrations_applied:
            console.print(f"  Migrations applied: {', '.join(str(v) for v in result.migrations_applied)}")
    except IdeaGraphError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.adapter.close()


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_obj
def usage(settings: Settings, as_json: bool) -> None:
    """Show how much of the storage quota the stored data uses."""
    with get_adapter(settings) as adapter:
        report = adapter.storage_usage()
    if as_json:
        click.echo(json.dumps({
            **report.model_dump(),
            "usage_percent": report.usage_percent,
            "level": report.level,
        }, indent=2))
        return
    color = {"info": "green", "warning": "yellow", "critical": "red"}[report.level]
    console.print(f"Key: {report.key or '-'}")
    console.print(f"Schema version: {report.schema_version if report.schema_version is not None else '-'}")
    console.print(f"[{color}]Usage: {report.payload_bytes} / {report.quota_bytes} bytes "
                  f"({report.usage_percent}%)[/{color}]")
    for name, count in sorted(report.counts.items()):
        console.print(f"  {name}: {count}")


if __name__ == "__main__":
    main()
