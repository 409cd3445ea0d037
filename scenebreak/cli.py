"""
Command-line interface for scenebreak.

Validate, parse and analyse screenplay files from the terminal. PDFs go
through the same extraction queue and worker pool the service uses, run
in-process.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from scenebreak.analysis.ledger import InMemoryLedger
from scenebreak.analysis.orchestrator import SceneAnalysisOrchestrator, SceneEvent, SceneEventType
from scenebreak.analysis.service import build_analysis_service
from scenebreak.config import get_settings
from scenebreak.extraction.queue import ExtractionQueue
from scenebreak.extraction.worker import WorkerPool
from scenebreak.intake import ScreenplayIntake
from scenebreak.models import Document, JobStatus, ParsedScreenplay, SceneStatus
from scenebreak.parsing.validator import DocumentValidator
from scenebreak.progress import ProgressTracker
from scenebreak.utils.errors import ExtractionFailedError, ScenebreakError, SubmissionRejectedError
from scenebreak.utils.logging import setup_logging

# Initialize Typer app and Rich console
app = typer.Typer(
    name="scenebreak",
    help="Screenplay scene breakdown and analysis",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    SceneStatus.COMPLETED: "green",
    SceneStatus.ERROR: "red",
    SceneStatus.SKIPPED: "dim",
    SceneStatus.PENDING: "yellow",
    SceneStatus.ANALYZING: "cyan",
}


def _read_file(path: Path) -> bytes:
    if not path.is_file():
        console.print(f"[red]Error:[/red] File not found: {path}")
        raise typer.Exit(1)
    return path.read_bytes()


async def _load_screenplay(
    path: Path,
    format_hint: Optional[str],
    visual_style: Optional[str] = None,
) -> ParsedScreenplay:
    """Submit a file and wait for its scenes, extracting PDFs through the queue."""
    payload = _read_file(path)
    async with ExtractionQueue() as queue:
        intake = ScreenplayIntake(queue)
        result = await intake.submit(payload, path.name, format_hint, visual_style)
        for warning in result.warnings:
            console.print(f"[yellow]⚠[/yellow] {warning}")
        if not result.queued:
            return result.screenplay

        async with WorkerPool(queue):
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                progress.add_task(f"Extracting text from {path.name}...", total=None)
                job = await queue.wait_for(result.job_id)

        if job.status == JobStatus.FAILED:
            raise ExtractionFailedError(
                f"Extraction failed after {job.attempts} attempts: {job.last_error}"
            )
        for warning in job.result.warnings:
            console.print(f"[yellow]⚠[/yellow] {warning}")
        return intake.scenes_for_job(result.job_id)


@app.command()
def validate(
    file: Path = typer.Argument(..., help="Screenplay file (.txt, .pdf, .fdx)"),
    format_hint: Optional[str] = typer.Option(None, "--format", "-f", help="Declared format"),
):
    """Run pre-submission checks on a screenplay file."""
    payload = _read_file(file)
    try:
        document = Document.from_upload(payload, file.name, format_hint)
    except ScenebreakError as e:
        console.print(f"[red]✗[/red] {e.message}")
        raise typer.Exit(1)

    report = DocumentValidator().validate(document)

    table = Table(title=f"Validation: {file.name}")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    for key, value in report.file_info.items():
        table.add_row(key, str(value))
    console.print(table)

    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")
    if not report.valid:
        for error in report.errors:
            console.print(f"[red]✗[/red] {error}")
        raise typer.Exit(1)
    console.print("[green]✓[/green] Ready for submission")


@app.command()
def parse(
    file: Path = typer.Argument(..., help="Screenplay file (.txt, .pdf, .fdx)"),
    format_hint: Optional[str] = typer.Option(None, "--format", "-f", help="Declared format"),
    as_json: bool = typer.Option(False, "--json", help="Print scenes as JSON"),
):
    """Split a screenplay into scenes."""

    async def _parse():
        try:
            screenplay = await _load_screenplay(file, format_hint)
        except SubmissionRejectedError as e:
            for error in e.errors:
                console.print(f"[red]✗[/red] {error}")
            raise typer.Exit(1)
        except ScenebreakError as e:
            console.print(f"[red]Error:[/red] {e.message}")
            raise typer.Exit(1)

        if as_json:
            console.print_json(screenplay.model_dump_json())
            return

        table = Table(title=f"{screenplay.title} ({screenplay.total_scenes} scenes)")
        table.add_column("#", justify="right")
        table.add_column("Heading", style="cyan")
        table.add_column("INT/EXT")
        table.add_column("Location")
        table.add_column("Time", style="dim")
        table.add_column("Chars", justify="right")
        table.add_column("Skip", justify="center")
        for block in screenplay.scenes:
            table.add_row(
                str(block.scene_number),
                block.header,
                block.heading.int_ext or "-",
                block.heading.location,
                block.heading.time_of_day or "-",
                str(len(block.text)),
                "○" if block.auto_skip else "",
            )
        console.print(table)

    asyncio.run(_parse())


@app.command()
def analyze(
    file: Path = typer.Argument(..., help="Screenplay file (.txt, .pdf, .fdx)"),
    format_hint: Optional[str] = typer.Option(None, "--format", "-f", help="Declared format"),
    caller: str = typer.Option("local", "--caller", help="Caller id charged for scenes"),
    credits: int = typer.Option(0, "--credits", help="Starting balance for the caller"),
    style: Optional[str] = typer.Option(None, "--style", "-s", help="Visual style directive"),
    instructions: Optional[str] = typer.Option(
        None, "--instructions", "-i", help="Custom instructions for every scene"
    ),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write analyses to JSON"),
):
    """Analyse every scene of a screenplay."""

    async def _analyze():
        try:
            screenplay = await _load_screenplay(file, format_hint, style)
            service = build_analysis_service()
        except SubmissionRejectedError as e:
            for error in e.errors:
                console.print(f"[red]✗[/red] {error}")
            raise typer.Exit(1)
        except ScenebreakError as e:
            console.print(f"[red]Error:[/red] {e.message}")
            raise typer.Exit(1)

        try:
            ledger = InMemoryLedger(balances={caller: credits} if credits else None)
            orchestrator = SceneAnalysisOrchestrator.from_screenplay(
                screenplay, service, ledger, caller, visual_style=style
            )

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task("Analyzing scenes...", total=100)

                def _on_event(event: SceneEvent) -> None:
                    if event.progress is not None:
                        eta = ProgressTracker.format_eta(event.progress.eta_ms)
                        progress.update(
                            task,
                            completed=event.progress.progress_percent,
                            description=f"Scene {event.scene_number}: {event.type.value} (ETA {eta})",
                        )
                    if event.type in (SceneEventType.FAILED, SceneEventType.HALTED):
                        progress.console.print(f"[red]✗[/red] {event.message}")

                orchestrator.add_listener(_on_event)
                result = await orchestrator.run(custom_instructions=instructions)

            table = Table(title=f"{screenplay.title}: analysis")
            table.add_column("#", justify="right")
            table.add_column("Heading", style="cyan")
            table.add_column("Status")
            table.add_column("Attempts", justify="right")
            table.add_column("Shots", justify="right")
            for scene in result.scenes:
                colour = STATUS_STYLES[scene.status]
                table.add_row(
                    str(scene.scene_number),
                    scene.header,
                    f"[{colour}]{scene.status.value}[/{colour}]",
                    str(scene.retry_count + (1 if scene.status == SceneStatus.COMPLETED else 0)),
                    str(len(scene.analysis.shot_list)) if scene.analysis else "-",
                )
            console.print(table)
            console.print(
                f"Completed {len(result.completed)}, failed {len(result.failed)}, "
                f"skipped {len(result.skipped)}; {result.charged} credit(s) used, "
                f"balance {await ledger.balance(caller)}"
            )
            if result.halted:
                console.print(f"[red]Halted:[/red] {result.halt_reason}")

            if output:
                data = {
                    "title": screenplay.title,
                    "project_id": result.project_id,
                    "progress": result.progress.model_dump(),
                    "scenes": [scene.model_dump(mode="json") for scene in result.scenes],
                }
                output.write_text(json.dumps(data, indent=2), encoding="utf-8")
                console.print(f"[green]✓[/green] Wrote {output}")

            if result.halted:
                raise typer.Exit(2)
        finally:
            await service.aclose()

    asyncio.run(_analyze())


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """scenebreak - break screenplays into scenes and analyse them."""
    log_level = "DEBUG" if debug else get_settings().log_level
    setup_logging(log_level=log_level)


if __name__ == "__main__":
    app()
