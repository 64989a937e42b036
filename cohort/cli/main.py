"""cohort CLI — inspect and exercise the coordination engine.

`cohort init` prepares the workspace and journal, `cohort policy` shows
the policy and its version history, `cohort simulate` drives simulated
workers through the full allocate/execute/adapt cycle, and
`cohort history` reads back recorded outcomes and adaptations.
"""

from __future__ import annotations

import logging
import sys

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cohort.config import settings

console = Console()

app = typer.Typer(
    name="cohort",
    help="cohort -- adaptive coordination for autonomous workers.",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging"),
):
    """Configure logging for every command."""
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


@app.command("init")
def init():
    """Initialize a cohort workspace and its journal."""
    from cohort.cli.context import run_async
    from cohort.persistence.journal import Journal

    workspace = settings.workspace_dir
    workspace.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)

    async def _init():
        journal = Journal(str(settings.db_path))
        await journal.initialize()
        await journal.close()

    run_async(_init())
    console.print(
        Panel(
            f"[green]cohort workspace initialized at {workspace}[/green]\n\n"
            f"Journal: [bold]{settings.db_path}[/bold]\n\n"
            "Try a simulated run:\n"
            "  [bold]cohort simulate --tasks 20 --workers 4[/bold]",
            title="cohort",
            border_style="cyan",
        )
    )


@app.command("policy")
def policy(
    history: bool = typer.Option(False, "--history", help="Show every policy version"),
    rollback: int = typer.Option(0, "--rollback", help="Re-issue an earlier policy version"),
):
    """Show the current coordination policy.

    Examples:
        cohort policy                 # current parameters
        cohort policy --history       # every version with its reason
        cohort policy --rollback 3    # re-issue version 3 as a new version
    """
    from cohort.cli.context import CohortContext, run_async
    from cohort.policy.schema import TUNABLE_PARAMETERS

    ctx = CohortContext.get()

    async def _policy():
        coordinator = await ctx.ensure()
        try:
            if rollback:
                entry = await coordinator.adaptation.rollback(rollback, reason="manual rollback")
                console.print(f"[green]Policy v{rollback} re-issued as v{entry.version}.[/green]")
            return coordinator.policies.version, coordinator.policies.current, coordinator.policies.history()
        finally:
            await ctx.close()

    try:
        version, current, versions = run_async(_policy())
    except KeyError as e:
        console.print(f"[red]{e.args[0]}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Coordination Policy v{version}")
    table.add_column("Parameter", style="cyan")
    table.add_column("Value", style="white")
    table.add_column("Bounds", style="dim")
    for name, value in current.model_dump(mode="json").items():
        if name == "approval_rules":
            continue
        spec = TUNABLE_PARAMETERS.get(name)
        bounds = f"{spec.min_val:g}..{spec.max_val:g}" if spec else ""
        table.add_row(name, str(value), bounds)
    console.print(table)

    rules = Table(title="Approval Rules")
    rules.add_column("Classification", style="cyan")
    rules.add_column("Keywords", style="white")
    for classification, keywords in current.approval_rules.items():
        rules.add_row(classification, ", ".join(keywords))
    console.print(rules)

    if history:
        ht = Table(title="Policy History")
        ht.add_column("Version", style="cyan")
        ht.add_column("When", style="dim", no_wrap=True)
        ht.add_column("Changes", style="green")
        ht.add_column("Reason", style="white")
        for v in versions:
            changes = ", ".join(
                f"{d.parameter}: {d.old_value} -> {d.new_value}" for d in v.deltas
            )
            ht.add_row(
                str(v.version),
                v.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                changes or "-",
                v.reason[:80] + ("..." if len(v.reason) > 80 else ""),
            )
        console.print(ht)


@app.command("simulate")
def simulate(
    tasks: int = typer.Option(20, "--tasks", "-t", help="Number of tasks to submit"),
    workers: int = typer.Option(4, "--workers", "-w", help="Number of simulated workers"),
    steps: int = typer.Option(3, "--steps", help="Steps each task takes"),
    failure_rate: float = typer.Option(0.1, "--failure-rate", help="Per-step failure probability"),
    gated: float = typer.Option(0.0, "--gated", help="Share of workers whose first step is a destructive action"),
    approve: bool = typer.Option(True, "--approve/--reject", help="How the simulated operator answers"),
    window: float = typer.Option(0.2, "--window", help="Bidding window in seconds"),
    seed: int = typer.Option(7, "--seed", help="Random seed"),
    persist: bool = typer.Option(False, "--persist", help="Record outcomes in the workspace journal"),
):
    """Run simulated workers through allocation, execution and adaptation."""
    import random

    from cohort.cli.context import CohortContext, run_async
    from cohort.types import Task
    from cohort.workers.simulated import SimulatedWorker

    rng = random.Random(seed)
    skills = ["analysis", "review", "search", "build"]
    # A restored journal keeps its own policy; the window only seeds a fresh one
    cfg = settings.model_copy(update={"bidding_window_seconds": window})
    ctx = CohortContext(cfg, persist=persist)

    async def _operator(request) -> bool:
        return approve

    async def _simulate():
        coordinator = await ctx.ensure()
        try:
            coordinator.gate.set_responder(_operator)
            for i in range(workers):
                caps = set(rng.sample(skills, k=rng.randint(1, len(skills))))
                coordinator.register_worker(SimulatedWorker(
                    worker_id=f"sim-{i + 1}",
                    capabilities=caps,
                    score=round(rng.uniform(0.5, 2.0), 2),
                    cost=round(rng.uniform(0.5, 3.0), 2),
                    steps=steps,
                    failure_rate=failure_rate,
                    actions=["drop stale cache"] if rng.random() < gated else None,
                    seed=rng.randint(0, 10_000),
                ))
            batch = [
                Task(
                    description=f"simulated task {n + 1}",
                    required_capabilities=set(rng.sample(skills, k=rng.randint(1, 2))),
                    priority=rng.randint(0, 3),
                )
                for n in range(tasks)
            ]
            reports = await coordinator.submit_many(batch)
            return reports, coordinator.summary(), coordinator.adaptation.records()
        finally:
            await ctx.close()

    reports, summary, adaptations = run_async(_simulate())

    table = Table(title=f"Simulation: {tasks} tasks, {workers} workers")
    table.add_column("Task", style="dim", max_width=12)
    table.add_column("Worker", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Failure", style="red")
    table.add_column("Bids", style="white")
    table.add_column("Steps", style="white")
    table.add_column("Policy", style="yellow")
    for r in reports:
        table.add_row(
            r.task_id, r.worker_id or "-", r.status.value, r.failure or "-",
            str(r.bids), str(r.steps), f"v{r.policy_version}",
        )
    console.print(table)

    for record in adaptations:
        changes = ", ".join(f"{d.parameter}: {d.old_value} -> {d.new_value}" for d in record.deltas)
        console.print(
            f"[yellow]adaptation[/yellow] cycle {record.cycle}: "
            f"v{record.prior_version} -> v{record.posterior_version} ({changes})"
        )

    console.print(Panel(
        "\n".join(f"{k}: {v}" for k, v in summary.items()),
        title="Summary",
        border_style="cyan",
    ))


@app.command("history")
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Max entries"),
    adaptations: bool = typer.Option(False, "--adaptations", help="Show adaptation records"),
):
    """Show recorded outcomes (or adaptations) from the journal."""
    from cohort.adaptation.loop import AdaptationRecord
    from cohort.cli.context import run_async
    from cohort.persistence.journal import ADAPTATIONS, OUTCOMES, Journal
    from cohort.types import OutcomeRecord

    if not settings.db_path.exists():
        console.print("[dim]No journal yet. Run 'cohort init' first.[/dim]")
        return

    async def _history():
        journal = Journal(str(settings.db_path))
        await journal.initialize()
        try:
            if adaptations:
                return await journal.load(ADAPTATIONS, AdaptationRecord, limit=limit)
            return await journal.load(OUTCOMES, OutcomeRecord, limit=limit)
        finally:
            await journal.close()

    entries = run_async(_history())
    if not entries:
        console.print("[dim]Nothing recorded yet.[/dim]")
        return

    if adaptations:
        table = Table(title="Adaptations")
        table.add_column("When", style="dim", no_wrap=True)
        table.add_column("Cycle", style="cyan")
        table.add_column("Policy", style="yellow")
        table.add_column("Deviations", style="white")
        table.add_column("Changes", style="green")
        for a in entries:
            table.add_row(
                a.created_at.strftime("%Y-%m-%d %H:%M"),
                str(a.cycle),
                f"v{a.prior_version} -> v{a.posterior_version}",
                ", ".join(f"{d.metric} ({d.severity:.1f})" for d in a.deviations),
                ", ".join(f"{d.parameter}={d.new_value}" for d in a.deltas),
            )
        console.print(table)
        return

    table = Table(title="Outcomes")
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("Task", style="dim", max_width=12)
    table.add_column("Worker", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Steps", style="white")
    table.add_column("Latency", style="white")
    table.add_column("Policy", style="yellow")
    for o in entries:
        table.add_row(
            o.completed_at.strftime("%Y-%m-%d %H:%M:%S"),
            o.task_id,
            o.worker_id or "-",
            o.status.value,
            str(o.steps),
            f"{o.latency_ms:.0f}ms",
            f"v{o.policy_version}",
        )
    console.print(table)


@app.command("version")
def version_cmd():
    """Show cohort version."""
    from cohort import __version__
    console.print(f"cohort v{__version__}")
