"""
venturelab CLI - Command-line interface for the hypothesis pipeline.

Commands:
- init: Write a default configuration file
- submit: Register input documents and create a run
- step: Execute one step of a run
- run: Drive a run until it finishes
- recover: Resume runs that stopped making progress
- status: Show a run or list recent runs
- pause / resume / cancel: Change a run's status out-of-band
- score: Parse an evaluation report and check its weighted total
- serve: Start the HTTP API
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import AppConfig, create_default_config, load_config
from .utils.logging import setup_logging

app = typer.Typer(
    name="venturelab",
    help="Step-wise research and evaluation of business hypotheses",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()

CONFIG_OPTION = typer.Option(Path("venturelab.toml"), "--config", "-c", help="Config file path")


def _load(config_path: Path, log_level: str = "INFO") -> AppConfig:
    setup_logging(level=log_level)
    return load_config(config_path)


async def _open_store(config: AppConfig):
    from .store.sqlite import RunStore

    db_path = Path(config.storage.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = RunStore(db_path)
    await store.initialize()
    return store


def _build_executor(config: AppConfig, store):
    from .agents.adapters import GeminiAdapter, RequestThrottle
    from .pipeline.executor import StepExecutor

    adapter = GeminiAdapter(
        model=config.ai.model,
        api_key=config.get_api_key(),
        research_agent=config.ai.deep_research_agent,
        base_url=config.ai.base_url,
        timeout=config.ai.timeout_seconds,
        max_retries=config.ai.max_retries,
        throttle=RequestThrottle(config.ai.min_request_interval_seconds),
    )
    return StepExecutor(store, adapter, config.pipeline)


def _print_step(run_id: int, result) -> None:
    phase = result.phase.value if result.phase is not None else "-"
    if result.error:
        console.print(f"Run {run_id}: [red]{phase}[/red] {result.error}")
    else:
        more = "[cyan]more[/cyan]" if result.has_more else "[green]done[/green]"
        console.print(f"Run {run_id}: [bold]{phase}[/bold] ({more})")


@app.command()
def init(
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help="Project directory"),
    model: str = typer.Option("gemini-2.5-flash", "--model", "-m", help="Content generation model"),
) -> None:
    """
    Write a default venturelab.toml and create the database.

    Example:
        venturelab init
        venturelab init --path ./lab --model gemini-2.5-pro
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        config_path = path / "venturelab.toml"

        if config_path.exists():
            console.print(f"[yellow]Warning:[/yellow] {config_path} already exists")
            raise typer.Exit(1)

        create_default_config(config_path, model=model)
        config = load_config(config_path)
        config.storage.db_path = path / config.storage.db_path
        asyncio.run(_init_database(config))

        console.print(Panel.fit(
            f"[green]✓[/green] Initialized venturelab in [bold]{path}[/bold]\n\n"
            f"Configuration: {config_path}\n"
            f"Database: {config.storage.db_path}\n\n"
            "[dim]Next steps:[/dim]\n"
            f"1. Set {config.ai.api_key_env} (and {config.scheduler.cron_secret_env} for the API)\n"
            "2. Submit a run: venturelab submit TARGET.md ASSETS.md\n"
            "3. Drive it: venturelab run RUN_ID",
            title="Project Initialized",
            border_style="green",
        ))

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _init_database(config: AppConfig) -> None:
    store = await _open_store(config)
    await store.close()


@app.command()
def submit(
    target_spec: Path = typer.Argument(..., help="Target specification document"),
    technical_assets: Path = typer.Argument(..., help="Technical assets document"),
    project_id: int = typer.Option(1, "--project", help="Owning project id"),
    job_name: str = typer.Option("", "--name", "-n", help="Job name"),
    count: int = typer.Option(5, "--count", help="Number of hypotheses to generate"),
    exclude_existing: bool = typer.Option(
        False, "--exclude-existing", help="Avoid hypotheses from earlier runs on the same inputs"
    ),
    config: Path = CONFIG_OPTION,
) -> None:
    """
    Register the two input documents and create a pending run.

    Example:
        venturelab submit target.md assets.md --name "Coatings" --count 3
    """
    try:
        cfg = _load(config, "WARNING")
        run = asyncio.run(
            _submit(cfg, target_spec, technical_assets, project_id, job_name, count, exclude_existing)
        )
        console.print(f"[green]✓[/green] Created run [bold]{run.id}[/bold] ({run.hypothesis_count} hypotheses)")
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _submit(
    config: AppConfig,
    target_spec: Path,
    technical_assets: Path,
    project_id: int,
    job_name: str,
    count: int,
    exclude_existing: bool,
):
    from .pipeline.models import ExistingFilter, ProgressInfo, Resource, Run

    store = await _open_store(config)
    try:
        spec = await store.create_resource(Resource(
            project_id=project_id,
            kind="target_spec",
            name=target_spec.name,
            content=target_spec.read_text(encoding="utf-8"),
        ))
        assets = await store.create_resource(Resource(
            project_id=project_id,
            kind="technical_assets",
            name=technical_assets.name,
            content=technical_assets.read_text(encoding="utf-8"),
        ))
        progress = ProgressInfo(message="Queued")
        if exclude_existing:
            progress.existing_filter = ExistingFilter(
                enabled=True,
                target_spec_ids=[spec.id],
                technical_assets_ids=[assets.id],
            )
        return await store.create_run(Run(
            project_id=project_id,
            job_name=job_name,
            target_spec_id=spec.id,
            technical_assets_id=assets.id,
            hypothesis_count=count,
            progress_info=progress,
        ))
    finally:
        await store.close()


@app.command()
def step(
    run_id: int = typer.Argument(..., help="Run id"),
    config: Path = CONFIG_OPTION,
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Log level"),
) -> None:
    """Execute exactly one step of a run."""
    try:
        cfg = _load(config, log_level)
        result = asyncio.run(_step(cfg, run_id))
        _print_step(run_id, result)
        if result.error:
            raise typer.Exit(1)
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _step(config: AppConfig, run_id: int):
    store = await _open_store(config)
    try:
        return await _build_executor(config, store).execute_step(run_id)
    finally:
        await store.close()


@app.command()
def run(
    run_id: int = typer.Argument(..., help="Run id"),
    poll_interval: Optional[float] = typer.Option(
        None, "--poll-interval", help="Seconds between polls (default from config)"
    ),
    max_steps: Optional[int] = typer.Option(None, "--max-steps", help="Stop after this many steps"),
    config: Path = CONFIG_OPTION,
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Log level"),
) -> None:
    """
    Drive a run locally until it completes, fails or is paused.

    Example:
        venturelab run 3
        venturelab run 3 --poll-interval 30
    """
    try:
        cfg = _load(config, log_level)
        interval = poll_interval if poll_interval is not None else cfg.scheduler.poll_interval_seconds
        result = asyncio.run(_drive(cfg, run_id, interval, max_steps))
        if result.error:
            raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; resume with 'venturelab run' or the cron sweep[/yellow]")
        raise typer.Exit(0)
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _drive(config: AppConfig, run_id: int, poll_interval: float, max_steps: int | None):
    from .pipeline.runner import drive_run

    store = await _open_store(config)
    try:
        return await drive_run(
            _build_executor(config, store),
            run_id,
            poll_interval=poll_interval,
            max_steps=max_steps,
            on_step=lambda result: _print_step(run_id, result),
        )
    finally:
        await store.close()


@app.command()
def recover(
    config: Path = CONFIG_OPTION,
    local: bool = typer.Option(
        False, "--local", help="Run one step per stale run here instead of calling the API"
    ),
) -> None:
    """Resume runs that are pending or running but have not progressed recently."""
    try:
        cfg = _load(config)
        results = asyncio.run(_recover(cfg, local))

        if not results:
            console.print("[dim]No stale runs[/dim]")
            return

        table = Table(title="Recovery")
        table.add_column("Run", justify="right")
        table.add_column("Status")
        table.add_column("Resumed")
        table.add_column("Error")
        for r in results:
            table.add_row(str(r.run_id), r.status, "✓" if r.resumed else "✗", r.error or "")
        console.print(table)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _recover(config: AppConfig, local: bool):
    from .pipeline.runner import StepChainer, recover_stale_runs

    store = await _open_store(config)
    try:
        if local:
            executor = _build_executor(config, store)

            async def trigger(run_id: int) -> bool:
                result = await executor.execute_step(run_id)
                return result.error is None
        else:
            chainer = StepChainer(
                base_url=config.scheduler.base_url,
                cron_secret=config.get_cron_secret(),
                max_retries=config.scheduler.chain_max_retries,
                timeout=config.scheduler.chain_timeout_seconds,
            )
            trigger = chainer.schedule_next

        return await recover_stale_runs(
            store,
            trigger,
            stale_after_seconds=config.scheduler.stale_after_seconds,
            limit=config.scheduler.recovery_batch_size,
        )
    finally:
        await store.close()


@app.command()
def status(
    run_id: Optional[int] = typer.Argument(None, help="Run id (omit to list recent runs)"),
    config: Path = CONFIG_OPTION,
) -> None:
    """Show one run with its hypotheses, or list recent runs."""
    try:
        cfg = _load(config, "WARNING")
        asyncio.run(_show_status(cfg, run_id))
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _show_status(config: AppConfig, run_id: int | None) -> None:
    from .web.services.run_service import summarize_run

    store = await _open_store(config)
    try:
        if run_id is None:
            runs = await store.list_runs(limit=20)
            if not runs:
                console.print("[yellow]No runs yet. Create one with 'venturelab submit'.[/yellow]")
                return
            table = Table(title="Runs")
            table.add_column("ID", justify="right")
            table.add_column("Job")
            table.add_column("Status")
            table.add_column("Step", justify="right")
            table.add_column("Progress")
            table.add_column("Updated")
            for r in runs:
                table.add_row(
                    str(r.id),
                    r.job_name or "-",
                    r.status,
                    str(r.current_step),
                    r.progress_info.message or "",
                    r.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
                )
            console.print(table)
            return

        found = await store.get_run(run_id)
        if found is None:
            console.print(f"[red]Run not found:[/red] {run_id}")
            raise typer.Exit(1)
        detail = summarize_run(found, await store.get_hypotheses_for_run(run_id))
    finally:
        await store.close()

    console.print(Panel.fit(
        f"[bold]Status:[/bold] {detail.status} (step {detail.current_step})\n"
        f"[bold]Progress:[/bold] {detail.progress.get('message', '-')}\n"
        f"[bold]Updated:[/bold] {detail.updated_at}"
        + (f"\n[red]Error:[/red] {detail.error_message}" if detail.error_message else ""),
        title=f"Run {detail.id} {detail.job_name}",
    ))
    if detail.hypotheses:
        table = Table()
        table.add_column("#", justify="right")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Technical", justify="right")
        table.add_column("Competitive", justify="right")
        for h in detail.hypotheses:
            table.add_row(
                str(h.hypothesis_number),
                h.display_title,
                h.processing_status if not h.error_message else f"{h.processing_status}: {h.error_message}",
                "-" if h.technical_total is None else f"{h.technical_total:.1f}",
                "-" if h.competitive_total is None else f"{h.competitive_total:.1f}",
            )
        console.print(table)


async def _set_status(config: AppConfig, run_id: int, action: str) -> str:
    from .pipeline.errors import RunNotFoundError
    from .pipeline.models import utcnow

    store = await _open_store(config)
    try:
        found = await store.get_run(run_id)
        if found is None:
            raise RunNotFoundError(run_id)
        if found.is_terminal:
            raise ValueError(f"Run {run_id} is already {found.status}")

        if action == "pause":
            new_status = "paused"
        elif action == "cancel":
            new_status = "cancelled"
        else:
            if found.status != "paused":
                raise ValueError(f"Run {run_id} is not paused")
            started = found.current_step > 0 or found.progress_info.research_handle is not None
            new_status = "running" if started else "pending"

        await store.update_run_status(run_id, status=new_status, updated_at=utcnow())
        return new_status
    finally:
        await store.close()


def _change_status(run_id: int, config: Path, action: str) -> None:
    try:
        cfg = _load(config, "WARNING")
        new_status = asyncio.run(_set_status(cfg, run_id, action))
        console.print(f"[green]✓[/green] Run {run_id} is now [bold]{new_status}[/bold]")
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def pause(run_id: int = typer.Argument(..., help="Run id"), config: Path = CONFIG_OPTION) -> None:
    """Pause a run; steps are no-ops until it is resumed."""
    _change_status(run_id, config, "pause")


@app.command()
def resume(run_id: int = typer.Argument(..., help="Run id"), config: Path = CONFIG_OPTION) -> None:
    """Resume a paused run."""
    _change_status(run_id, config, "resume")


@app.command()
def cancel(run_id: int = typer.Argument(..., help="Run id"), config: Path = CONFIG_OPTION) -> None:
    """Cancel a run. In-flight remote research is left to expire."""
    _change_status(run_id, config, "cancel")


@app.command()
def score(
    report: Path = typer.Argument(..., help="Evaluation report text file"),
    kind: str = typer.Option("technical", "--kind", "-k", help="technical or competitive"),
) -> None:
    """
    Parse an evaluation report and recompute its weighted total.

    Example:
        venturelab score step3.txt
        venturelab score step4.txt --kind competitive
    """
    from .parsers import (
        COMPETITIVE_AXES,
        TECHNICAL_AXES,
        check_competitive_total,
        check_technical_total,
        parse_competitive_evaluation,
        parse_technical_evaluation,
    )

    if kind not in ("technical", "competitive"):
        console.print(f"[red]Error:[/red] Unknown report kind: {kind}")
        raise typer.Exit(1)

    try:
        text = report.read_text(encoding="utf-8")
    except OSError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if kind == "technical":
        axes, result = TECHNICAL_AXES, parse_technical_evaluation(text)
        check = check_technical_total(result.data)
    else:
        axes, result = COMPETITIVE_AXES, parse_competitive_evaluation(text)
        check = check_competitive_total(result.data)

    table = Table(title=f"{kind.capitalize()} scores")
    table.add_column("Axis")
    table.add_column("Weight", justify="right")
    table.add_column("Score", justify="right")
    for axis in axes:
        value = getattr(result.data.scores, axis.key)
        table.add_row(axis.label, f"{axis.weight}%", "-" if value is None else str(value))
    console.print(table)

    console.print(f"Attractiveness: {result.data.attractiveness or '-'}")
    console.print(f"Reported total: {check.reported if check.reported is not None else '-'}")
    console.print(f"Calculated total: {check.calculated if check.calculated is not None else '-'}")
    if check.consistent is False:
        console.print("[yellow]Reported total does not match the scores[/yellow]")

    for error in result.errors:
        console.print(f"[red]✗[/red] {error}")
    if not result.success:
        raise typer.Exit(1)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Port"),
    config: Path = CONFIG_OPTION,
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Log level"),
) -> None:
    """Start the HTTP API (step processing and cron sweep)."""
    import uvicorn

    from .web import create_app

    try:
        cfg = _load(config, log_level)
        if not cfg.get_cron_secret():
            console.print(
                f"[yellow]Warning:[/yellow] {cfg.scheduler.cron_secret_env} is not set; "
                "the process and cron endpoints will reject every request"
            )
        application = create_app(cfg)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"Serving on http://{host}:{port} (docs at /api/docs)")
    uvicorn.run(application, host=host, port=port, log_level=log_level.lower())


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
