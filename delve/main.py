"""Delve CLI — the user interface.

Commands:
    delve research   — Plan, refine, research and synthesize a topic
    delve session    — Show (or --clear) the stored research session
    delve strategy   — Print the per-task model strategy table
    delve version    — Show the Delve version
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from delve.utils import setup_logging

# Initialize logging on import
setup_logging()

app = typer.Typer(
    name="delve",
    help="🔎 Delve — multi-stage research with an external language model",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_STATE_STYLE = {
    "plan_review": "cyan",
    "refining_plan": "cyan",
    "researching": "yellow",
    "synthesizing": "yellow",
    "done": "green",
    "error": "red",
}


# ── delve research ────────────────────────────────────────────


@app.command()
def research(
    topic: str = typer.Argument(None, help="Topic to research (omit to resume a stored session)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    stats: bool = typer.Option(False, "--stats", help="Show model and cache diagnostics at the end"),
):
    """📚 Research a topic: review the plan, then get a synthesized report."""
    if verbose:
        setup_logging(level="debug")
    asyncio.run(_research(topic, show_stats=stats))


async def _research(topic: str | None, show_stats: bool = False) -> None:
    from delve.engine.orchestrator import ResearchOrchestrator
    from delve.models.research import ResearchState, SubtopicStatus
    from delve.research.store import SessionStore
    from delve.research.visibility import install_signal_handlers
    from delve.research.workflow import ResearchWorkflow
    from delve.tools.generation import GenerationClient

    store = SessionStore()
    orchestrator = ResearchOrchestrator(GenerationClient())
    workflow = ResearchWorkflow(orchestrator, store)

    def _on_subtopic(index, record, sources):
        total = len(workflow.plan)
        if record.status == SubtopicStatus.LOADING:
            console.print(f"[dim][{index + 1}/{total}] researching {record.title}…[/]")
        elif record.failed:
            console.print(f"[red]✗[/] {record.title} [dim]({record.error})[/]")
        else:
            console.print(f"[green]✓[/] {record.title} [dim]{len(sources)} sources so far[/]")

    workflow.on_subtopic_update(_on_subtopic)
    workflow.visibility.subscribe(lambda adv: console.print(f"\n[yellow]⚠ {adv.message}[/]"))
    install_signal_handlers(workflow.visibility)
    orchestrator.start()

    try:
        stored = await store.load()
        if stored is not None and store.has_active_research() and (
            topic is None
            or typer.confirm(
                f"Resume unfinished research on '{stored.topic}' "
                f"({stored.progress_pct}% complete)?",
                default=True,
            )
        ):
            with console.status("[dim]Resuming...[/]", spinner="dots"):
                await workflow.resume(stored)
        elif topic is None:
            console.print("[yellow]No research session to resume. Pass a topic.[/]")
            raise typer.Exit(1)
        else:
            with console.status("[dim]Planning...[/]", spinner="dots"):
                await workflow.submit_topic(topic)

        while True:
            state = workflow.state
            if state == ResearchState.PLAN_REVIEW:
                _print_plan(workflow.plan)
                try:
                    answer = console.input(
                        "[bold cyan]Feedback[/] [dim](Enter to approve, 'quit' to stop):[/] "
                    ).strip()
                except (EOFError, KeyboardInterrupt):
                    answer = "quit"
                if answer.lower() in ("quit", "exit", "q"):
                    console.print("[dim]Plan saved. Run [bold]delve research[/bold] to resume.[/]")
                    return
                if answer:
                    with console.status("[dim]Refining plan...[/]", spinner="dots"):
                        await workflow.give_feedback(answer)
                    if workflow.error:
                        console.print(f"[yellow]⚠ Plan unchanged: {workflow.error}[/]")
                    continue
                console.print()
                await workflow.approve()
            elif state == ResearchState.ERROR:
                console.print(Panel(
                    f"[red]{workflow.error}[/]",
                    title="[bold red]Research failed[/]",
                    border_style="red",
                ))
                if not typer.confirm("Start over with the same topic?", default=False):
                    return
                with console.status("[dim]Planning...[/]", spinner="dots"):
                    await workflow.retry()
            else:
                break

        if workflow.report is not None:
            _print_report(workflow)
        if show_stats:
            _print_stats(
                orchestrator.get_performance_stats(),
                orchestrator.get_cache_stats(),
                orchestrator.total_tokens,
            )
    finally:
        await orchestrator.close()


def _print_plan(plan: list[str]) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("#", style="dim", justify="right")
    table.add_column("Subtopic", style="white")
    for i, title in enumerate(plan, 1):
        table.add_row(str(i), title)
    console.print(Panel(table, title="[bold cyan]📋 Research Plan[/]", border_style="cyan"))


def _print_report(workflow) -> None:
    report = workflow.report
    console.print(Panel(
        "\n".join(f"• {point}" for point in report.summary),
        title=f"[bold green]Key points — {workflow.topic}[/]",
        border_style="green",
    ))
    console.print(report.report, markup=False, highlight=False)

    if workflow.sources:
        table = Table(title="Sources", show_lines=False)
        table.add_column("#", style="dim", justify="right")
        table.add_column("Title", style="cyan")
        table.add_column("URI", style="dim")
        for i, source in enumerate(workflow.sources, 1):
            table.add_row(str(i), source.title or source.uri, source.uri)
        console.print(table)


def _print_stats(perf: dict, cache: dict, tokens: int = 0) -> None:
    table = Table(title="Model Performance")
    table.add_column("Model", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg ms", justify="right")
    for model_id, s in perf.items():
        table.add_row(
            model_id,
            str(s["total_requests"]),
            str(s["error_count"]),
            s["success_rate"],
            f"{s['avg_response_time_ms']:.0f}",
        )
    console.print(table)
    console.print(
        f"[dim]Cache: {cache['total']} entries, {cache['valid']} valid, "
        f"{cache['expired']} expired, {tokens} tokens used[/]"
    )


# ── delve session ─────────────────────────────────────────────


@app.command()
def session(
    clear: bool = typer.Option(False, "--clear", help="Discard the stored session"),
):
    """💾 Show the stored research session."""
    asyncio.run(_session(clear))


async def _session(clear: bool) -> None:
    from delve.research.store import SessionStore
    from delve.utils.clock import age_human

    store = SessionStore()
    stored = await store.load()

    if clear:
        await store.clear_session()
        console.print("[dim]Stored session cleared.[/]")
        return

    if stored is None:
        console.print("[dim]No stored research session.[/]")
        return

    state = stored.research_state.value
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Session", stored.id)
    table.add_row("Topic", stored.topic)
    table.add_row("State", f"[{_STATE_STYLE.get(state, 'white')}]{state}[/]")
    table.add_row("Progress", f"{stored.progress_pct}% of {len(stored.subtopics)} subtopics")
    table.add_row("Started", age_human(stored.start_time))
    table.add_row("Last activity", age_human(stored.last_activity))
    console.print(Panel(table, title="[bold cyan]💾 Stored Session[/]", border_style="cyan"))

    sub_table = Table(show_lines=False)
    sub_table.add_column("#", style="dim", justify="right")
    sub_table.add_column("Subtopic")
    sub_table.add_column("Status")
    for i, record in enumerate(stored.subtopics, 1):
        status = "failed" if record.failed else record.status.value
        sub_table.add_row(str(i), record.title, status)
    console.print(sub_table)


# ── delve strategy ────────────────────────────────────────────


@app.command()
def strategy():
    """🧭 Show the model strategy table."""
    from delve.tools.strategy import MODEL_STRATEGY

    table = Table(title="Model Strategy")
    table.add_column("Task", style="cyan")
    table.add_column("Primary", style="green")
    table.add_column("Fallback", style="yellow")
    table.add_column("Max tokens", justify="right")
    table.add_column("Temp", justify="right")
    table.add_column("Rationale", style="dim")
    for task, entry in MODEL_STRATEGY.items():
        table.add_row(
            task.value,
            entry.primary_model,
            entry.fallback_model,
            str(entry.max_tokens),
            f"{entry.temperature:.1f}",
            entry.rationale,
        )
    console.print(table)


# ── delve version ─────────────────────────────────────────────


@app.command()
def version():
    """📦 Show Delve version."""
    from delve import __version__
    console.print(f"[bold cyan]🔎 Delve[/] v{__version__}")


# ── Entry point ───────────────────────────────────────────────

if __name__ == "__main__":
    app()
