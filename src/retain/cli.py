"""
Retain CLI - command-line interface for the Retain knowledge store.

Imports conversation exports, drives the analysis queue, and reviews the
learnings and workflow clusters extracted from them.
"""

import logging
import threading
import uuid
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from retain.config import settings
from retain.db.connection import (
    create_session_factory,
    get_default_engine,
    init_db,
    session_scope,
)
from retain.exceptions import BackendError, RetainError
from retain.logging_config import setup_logging
from retain.models.db import AnalysisType, LearningScope

app = typer.Typer(
    name="retain",
    help="Retain - learnings and workflow patterns from AI conversations",
    no_args_is_help=True,
)
queue_app = typer.Typer(no_args_is_help=True)
learnings_app = typer.Typer(no_args_is_help=True)
suggestions_app = typer.Typer(no_args_is_help=True)
workflows_app = typer.Typer(no_args_is_help=True)
audit_app = typer.Typer(no_args_is_help=True)

app.add_typer(queue_app, name="queue", help="Inspect and maintain the analysis queue")
app.add_typer(learnings_app, name="learnings", help="Review extracted learnings")
app.add_typer(suggestions_app, name="suggestions", help="Review title/summary/merge suggestions")
app.add_typer(workflows_app, name="workflows", help="Workflow signatures and clusters")
app.add_typer(audit_app, name="audit", help="Extraction quality audits")

console = Console()

QUEUEABLE_TYPES = [t.value for t in AnalysisType if t != AnalysisType.DEDUPE]


def get_engine() -> Engine:
    return get_default_engine()


def get_session_factory() -> sessionmaker[Session]:
    """Session factory for the configured database; the schema is created on first use."""
    engine = get_engine()
    init_db(engine)
    return create_session_factory(engine)


def fail(message: str) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(1)


def error_message(error: RetainError) -> str:
    if isinstance(error, BackendError):
        return error.diagnostic
    return str(error)


def check_types(types: list[str]) -> list[str]:
    unknown = [t for t in types if t not in QUEUEABLE_TYPES]
    if unknown:
        fail(f"Unknown analysis type(s): {', '.join(unknown)} (use {', '.join(QUEUEABLE_TYPES)})")
    return types


@app.callback()
def main() -> None:
    """Configure logging for every command."""
    try:
        setup_logging(context="cli")
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


@app.command("init-db")
def init_db_command() -> None:
    """Create the database schema."""
    engine = get_engine()
    init_db(engine)
    console.print(f"[green]✓ Database ready:[/green] {engine.url}")


@app.command("import")
def import_conversations(
    path: Path = typer.Argument(..., help="JSON export file or directory of .json files"),
    enqueue: Optional[list[str]] = typer.Option(
        None, "--enqueue", "-e", help="Queue imported conversations for this analysis type"
    ),
    priority: int = typer.Option(0, help="Priority of queued items"),
) -> None:
    """
    Import conversation exports.

    Re-importing a conversation merges it with the stored copy; message ids
    and learnings stay attached.
    """
    from retain.db.repositories.analysis_queue import AnalysisQueueRepository
    from retain.db.repositories.conversation import ConversationRepository
    from retain.exceptions import ConflictError
    from retain.ingest import load_conversations

    types = check_types(enqueue or [])
    if not path.exists():
        fail(f"Path not found: {path}")
    files = sorted(path.glob("*.json")) if path.is_dir() else [path]
    if not files:
        console.print("[yellow]No .json files found[/yellow]")
        raise typer.Exit(0)

    factory = get_session_factory()
    imported = unchanged = failed = queued = 0

    for file in files:
        try:
            parsed_conversations = load_conversations(file)
        except (RetainError, OSError) as e:
            console.print(f"[red]✗[/red] {file.name}: {e}")
            failed += 1
            continue

        for parsed in parsed_conversations:
            try:
                with session_scope(factory) as session:
                    result = ConversationRepository(session).upsert(parsed)
                    queue = AnalysisQueueRepository(session)
                    for analysis_type in types:
                        try:
                            queue.enqueue(result.id, analysis_type, priority=priority)
                            queued += 1
                        except ConflictError:
                            pass
            except RetainError as e:
                console.print(f"[red]✗[/red] {parsed.external_id}: {e}")
                failed += 1
                continue

            if result.did_change:
                imported += 1
                console.print(f"[green]✓[/green] {parsed.provider}/{parsed.external_id}")
            else:
                unchanged += 1

    console.print()
    console.print("[bold]Summary:[/bold]")
    console.print(f"  Imported/updated: {imported}")
    console.print(f"  Unchanged: {unchanged}")
    console.print(f"  Queued: {queued}")
    console.print(f"  Failed: {failed}")
    if failed:
        raise typer.Exit(1)


# ===== Queue =====


@queue_app.command("enqueue")
def queue_enqueue(
    conversation_ids: Optional[list[uuid.UUID]] = typer.Argument(None, help="Conversation ids"),
    analysis_type: str = typer.Option("learning", "--type", "-t", help="Analysis type"),
    all_conversations: bool = typer.Option(False, "--all", help="Queue every conversation"),
    priority: int = typer.Option(0, help="Higher runs first"),
) -> None:
    """Queue conversations for analysis."""
    from retain.analysis.orchestrator import AnalysisOrchestrator, ScanScope

    check_types([analysis_type])
    orchestrator = AnalysisOrchestrator(get_session_factory())
    ids = list(conversation_ids or [])
    if all_conversations:
        ids = orchestrator.scoped_conversation_ids(ScanScope())
    if not ids:
        fail("No conversations given (pass ids or --all)")

    queued = orchestrator.queue_analysis(ids, analysis_type, priority=priority)
    console.print(
        f"[green]✓ Queued {queued}[/green] {analysis_type} items "
        f"({len(ids) - queued} already scheduled)"
    )


@queue_app.command("stats")
def queue_stats() -> None:
    """Show queue counts by status."""
    from retain.db.repositories.analysis_queue import AnalysisQueueRepository

    with session_scope(get_session_factory()) as session:
        stats = AnalysisQueueRepository(session).get_stats()

    table = Table(title="Analysis queue")
    table.add_column("Status", style="cyan")
    table.add_column("Items", justify="right")
    for label, value in (
        ("pending", stats.pending),
        ("claimed", stats.claimed),
        ("completed", stats.completed),
        ("failed", stats.failed),
        ("unapplied results", stats.unapplied),
        ("total", stats.total),
    ):
        table.add_row(label, str(value))
    console.print(table)


@queue_app.command("reap")
def queue_reap(
    stale_after: Optional[int] = typer.Option(
        None, help="Seconds before a claim counts as stale (default from settings)"
    ),
) -> None:
    """Release stale claims and apply orphaned results once."""
    from datetime import timedelta

    from retain.analysis.reaper import StaleClaimsReaper

    reaper = StaleClaimsReaper(
        get_session_factory(),
        stale_after=timedelta(seconds=stale_after) if stale_after else None,
    )
    result = reaper.reap_once()
    console.print(
        f"Released {result.released} stale claims, failed {result.failed} exhausted, "
        f"applied {result.applied} results"
    )


@queue_app.command("cleanup")
def queue_cleanup(
    days: int = typer.Option(30, help="Delete finished items older than this"),
) -> None:
    """Purge finished queue items."""
    from retain.analysis.reaper import StaleClaimsReaper

    deleted = StaleClaimsReaper(get_session_factory()).cleanup_old_items(days)
    console.print(f"Deleted {deleted} queue items older than {days} days")


# ===== Analysis =====


@app.command()
def analyze(
    types: Optional[list[str]] = typer.Option(
        None, "--type", "-t", help="Analysis types for --all (default: learning, workflow)"
    ),
    batch_size: Optional[int] = typer.Option(None, help="Items claimed per batch"),
    all_conversations: bool = typer.Option(
        False, "--all", help="Queue every conversation first, then drain the queue"
    ),
    days: Optional[int] = typer.Option(None, help="With --all: only conversations updated in N days"),
    project: Optional[str] = typer.Option(None, help="With --all: only this project path"),
    provider: Optional[list[str]] = typer.Option(None, help="With --all: only these providers"),
) -> None:
    """
    Run queued analysis through the configured backend.

    Sends conversation content to the backend; requires
    RETAIN_ALLOW_CLOUD_ANALYSIS=true.
    """
    from retain.analysis.orchestrator import (
        DEFAULT_SCAN_TYPES,
        AnalysisOrchestrator,
        FullScanProgress,
        ScanScope,
    )

    orchestrator = AnalysisOrchestrator(get_session_factory())
    console.print(
        f"[bold blue]Analyzing with:[/bold blue] {settings.analysis_backend} "
        f"({settings.analysis_payload_mode} payloads)"
    )

    try:
        if all_conversations:
            scope = ScanScope(
                time_window_days=days,
                project_path=project,
                providers=frozenset(provider or []),
            )

            def report(progress: FullScanProgress) -> None:
                eta = f", ETA {progress.eta_seconds:.0f}s" if progress.eta_seconds else ""
                console.print(f"  {progress.processed}/{progress.total}{eta}")

            cancel = threading.Event()
            try:
                progress = orchestrator.run_full_scan(
                    types=check_types(types) if types else DEFAULT_SCAN_TYPES,
                    batch_size=batch_size,
                    scope=scope,
                    progress_callback=report,
                    cancel_event=cancel,
                )
            except KeyboardInterrupt:
                cancel.set()
                raise
            label = "[yellow]Cancelled[/yellow]" if progress.cancelled else "[green]✓ Done[/green]"
            console.print(f"{label}: {progress.processed}/{progress.total} items processed")
            return

        completed = failed = applied = 0
        while True:
            outcome = orchestrator.process_queue_batch(batch_size)
            if outcome.claimed == 0:
                break
            completed += outcome.completed
            failed += outcome.failed
            applied += outcome.applied
        console.print(
            f"[green]✓ Done[/green]: {completed} completed, {failed} failed, {applied} applied"
        )
    except RetainError as e:
        fail(error_message(e))


# ===== Learnings =====


@learnings_app.command("list")
def learnings_list(
    include_implicit: bool = typer.Option(
        False, "--include-implicit", help="Also show recurring positive/implicit learnings"
    ),
    approved: bool = typer.Option(False, "--approved", help="Show approved learnings instead"),
    limit: int = typer.Option(50, help="Maximum rows"),
) -> None:
    """List learnings awaiting review."""
    from retain.db.repositories.learning import LearningRepository

    with session_scope(get_session_factory()) as session:
        repo = LearningRepository(session)
        learnings = (
            list(repo.list_approved())[:limit]
            if approved
            else repo.list_pending(include_implicit=include_implicit, limit=limit)
        )

        if not learnings:
            console.print("[yellow]No learnings found.[/yellow]")
            return

        table = Table(title="Approved learnings" if approved else "Pending learnings")
        table.add_column("ID", style="dim")
        table.add_column("Type")
        table.add_column("Rule", style="cyan")
        table.add_column("Scope")
        table.add_column("Seen", justify="right")
        table.add_column("Conf.", justify="right")
        for learning in learnings:
            table.add_row(
                str(learning.id),
                learning.learning_type,
                learning.extracted_rule,
                learning.scope,
                str(learning.evidence_count),
                f"{learning.confidence:.2f}",
            )
        console.print(table)


@learnings_app.command("approve")
def learnings_approve(
    learning_id: uuid.UUID = typer.Argument(..., help="Learning id"),
    scope: Optional[str] = typer.Option(None, help="global or project"),
    rule: Optional[str] = typer.Option(None, help="Replace the rule text"),
) -> None:
    """Approve a learning."""
    from retain.db.repositories.learning import LearningRepository

    if scope is not None and scope not in {s.value for s in LearningScope}:
        fail(f"Invalid scope: {scope}")
    with session_scope(get_session_factory()) as session:
        learning = LearningRepository(session).approve(learning_id, scope=scope, edited_rule=rule)
    if learning is None:
        fail(f"Learning not found: {learning_id}")
    console.print(f"[green]✓ Approved[/green] {learning.extracted_rule}")


@learnings_app.command("reject")
def learnings_reject(learning_id: uuid.UUID = typer.Argument(..., help="Learning id")) -> None:
    """Reject a learning."""
    from retain.db.repositories.learning import LearningRepository

    with session_scope(get_session_factory()) as session:
        learning = LearningRepository(session).reject(learning_id)
    if learning is None:
        fail(f"Learning not found: {learning_id}")
    console.print(f"[green]✓ Rejected[/green] {learning.extracted_rule}")


@learnings_app.command("scan")
def learnings_scan() -> None:
    """Run the deterministic correction detector over all conversations."""
    from retain.learning.detector import CorrectionDetector, DetectorConfig
    from retain.learning.service import LearningScanService

    detector = CorrectionDetector(
        DetectorConfig(
            min_confidence=settings.learning_min_confidence,
            context_window=settings.learning_context_window,
            enable_positive_feedback=settings.learning_positive_feedback,
        )
    )
    with session_scope(get_session_factory()) as session:
        stats = LearningScanService(
            session, detector=detector, cancel_check_every=settings.scan_cancel_check_every
        ).scan_all()
    console.print(
        f"Scanned {stats.conversations_scanned} conversations: "
        f"{stats.detections} detections, {stats.learnings_stored} stored"
    )


# ===== Suggestions =====


@suggestions_app.command("list")
def suggestions_list(limit: int = typer.Option(50, help="Maximum rows")) -> None:
    """List pending suggestions."""
    from retain.analysis.processor import ResultProcessor

    suggestions = ResultProcessor(get_session_factory()).list_pending_suggestions(limit)
    if not suggestions:
        console.print("[yellow]No pending suggestions.[/yellow]")
        return

    table = Table(title="Pending suggestions")
    table.add_column("ID", style="dim")
    table.add_column("Type")
    table.add_column("Suggested", style="cyan")
    table.add_column("Current")
    for suggestion in suggestions:
        table.add_row(
            str(suggestion.id),
            suggestion.suggestion_type,
            suggestion.suggested_value,
            suggestion.original_value or "",
        )
    console.print(table)


@suggestions_app.command("apply")
def suggestions_apply(suggestion_id: uuid.UUID = typer.Argument(..., help="Suggestion id")) -> None:
    """Apply a suggestion and mark it approved."""
    from retain.analysis.processor import ResultProcessor

    try:
        ResultProcessor(get_session_factory()).apply_and_approve_suggestion(suggestion_id)
    except RetainError as e:
        fail(error_message(e))
    console.print(f"[green]✓ Applied[/green] {suggestion_id}")


@suggestions_app.command("reject")
def suggestions_reject(
    suggestion_id: uuid.UUID = typer.Argument(..., help="Suggestion id"),
    reason: Optional[str] = typer.Option(None, help="Why it was rejected"),
) -> None:
    """Reject a suggestion."""
    from retain.analysis.processor import ResultProcessor

    if not ResultProcessor(get_session_factory()).reject_suggestion(suggestion_id, reason):
        fail(f"Suggestion not found: {suggestion_id}")
    console.print(f"[green]✓ Rejected[/green] {suggestion_id}")


# ===== Workflows =====


@workflows_app.command("scan")
def workflows_scan(
    reset: bool = typer.Option(False, "--reset", help="Delete all signatures and rescan"),
    missing: bool = typer.Option(False, "--missing", help="Only conversations without a signature"),
) -> None:
    """Extract workflow signatures with the deterministic extractor."""
    from retain.workflow.service import WorkflowSignatureService

    if reset and missing:
        fail("--reset and --missing are mutually exclusive")

    cancel = threading.Event()
    with session_scope(get_session_factory()) as session:
        service = WorkflowSignatureService(
            session,
            cancel_check_every=settings.scan_cancel_check_every,
            commit_progress=True,
        )
        try:
            if reset:
                progress = service.reset_and_scan_all(cancel_event=cancel)
            elif missing:
                progress = service.scan_missing_signatures(cancel_event=cancel)
            else:
                progress = service.scan_all(cancel_event=cancel)
        except KeyboardInterrupt:
            cancel.set()
            raise
    console.print(
        f"Scanned {progress.processed}/{progress.total} conversations, "
        f"{progress.stored} signatures stored"
    )


@workflows_app.command("clusters")
def workflows_clusters(
    priming: bool = typer.Option(False, "--priming", help="Show session-priming clusters"),
    limit: int = typer.Option(10, help="Maximum clusters"),
) -> None:
    """Show recurring workflows worth automating."""
    from retain.workflow.service import WorkflowSignatureService

    with session_scope(get_session_factory()) as session:
        service = WorkflowSignatureService(session)
        clusters = service.priming_clusters(limit) if priming else service.top_clusters(limit)

    if not clusters:
        console.print("[yellow]No recurring workflows yet.[/yellow]")
        return

    table = Table(title="Priming clusters" if priming else "Top workflow clusters")
    table.add_column("Signature", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Projects", justify="right")
    table.add_column("Example")
    for cluster in clusters:
        example = cluster.samples[0].snippet if cluster.samples else ""
        table.add_row(
            cluster.signature, str(cluster.count), str(cluster.distinct_projects), example[:80]
        )
    console.print(table)


# ===== Audits =====


@audit_app.command("extraction")
def audit_extraction(
    reset: bool = typer.Option(False, "--reset", help="Delete learnings and signatures first"),
) -> None:
    """Rebuild learnings and workflow signatures deterministically."""
    from retain.audit import run_extraction_audit

    with session_scope(get_session_factory()) as session:
        result = run_extraction_audit(session, reset=reset)
    console.print("[bold]Extraction audit:[/bold]")
    console.print(f"  Conversations: {result.conversations}")
    console.print(f"  Learning detections: {result.learning_detections}")
    console.print(f"  Learnings stored: {result.learnings_stored}")
    console.print(f"  Workflow signatures: {result.signatures_stored}")


@audit_app.command("shadow")
def audit_shadow(
    sample: int = typer.Option(30, help="Conversations to sample"),
    seed: int = typer.Option(42, help="Sampling seed"),
    output_dir: Optional[Path] = typer.Option(None, help="Report directory"),
    allow_cloud: bool = typer.Option(
        False, "--allow-cloud", help="Allow sending the sample to the backend for this run"
    ),
) -> None:
    """Compare deterministic and LLM extraction on a reproducible sample."""
    from retain.audit import run_shadow_audit

    try:
        with session_scope(get_session_factory()) as session:
            summary = run_shadow_audit(
                session,
                sample_size=sample,
                seed=seed,
                output_dir=output_dir,
                allow_cloud=allow_cloud,
            )
    except RetainError as e:
        fail(error_message(e))

    table = Table(title=f"Shadow audit ({summary.sample_size} conversations, seed {seed})")
    table.add_column("Variant", style="cyan")
    table.add_column("Learnings", justify="right")
    table.add_column("Actionable %", justify="right")
    table.add_column("Dup. %", justify="right")
    table.add_column("Automations", justify="right")
    table.add_column("Unique sig.", justify="right")
    table.add_column("Dropped", justify="right")
    for name, variant in (
        ("deterministic", summary.deterministic),
        ("llm minimized", summary.llm_minimized),
        ("llm expanded", summary.llm_expanded),
    ):
        if variant is None:
            continue
        table.add_row(
            name,
            str(variant.learnings.total),
            f"{variant.learnings.actionable_pct:.1f}",
            f"{variant.learnings.duplication_pct:.1f}",
            str(variant.automations.total),
            str(variant.automations.unique_signatures),
            str(variant.dropped_queue_items),
        )
    console.print(table)


if __name__ == "__main__":
    app()
