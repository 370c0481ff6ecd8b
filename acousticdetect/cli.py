"""Typer CLI for acousticdetect."""

from pathlib import Path
from typing import Annotated

import typer

from acousticdetect.audio_io import AUDIO_EXTENSIONS, read_pulse_table
from acousticdetect.errors import AcousticDetectError
from acousticdetect.pipeline import DetectionEngine
from acousticdetect.records import RecordStore
from acousticdetect.settings import load_configs
from acousticdetect.utils import Timer, format_duration, setup_logging

app = typer.Typer(
    name="acousticdetect",
    help="acousticdetect: Find acoustic events in long recordings and keep per-file records.",
    add_completion=False,
)


@app.callback()
def main() -> None:
    """acousticdetect: Find acoustic events in long recordings and keep per-file records."""


def _collect_audio(inputs: list[Path]) -> list[Path]:
    paths: list[Path] = []
    for item in inputs:
        if item.is_dir():
            paths.extend(
                sorted(p for p in item.rglob("*") if p.suffix.lower() in AUDIO_EXTENSIONS)
            )
        else:
            paths.append(item)
    return paths


@app.command()
def run(
    audio: Annotated[
        list[Path],
        typer.Argument(help="Audio files or directories of WAV/FLAC files"),
    ],
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help="JSON file with the detection configurations"),
    ],
    records: Annotated[
        Path,
        typer.Option("--records", "-r", help="Directory holding the per-file record sets"),
    ],
    pulse_table: Annotated[
        Path | None,
        typer.Option("--pulse-table", help="CSV pulse schedule for constant-rate configurations"),
    ] = None,
    jobs: Annotated[
        int,
        typer.Option("--jobs", "-j", help="Number of files processed in parallel"),
    ] = 1,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose logging"),
    ] = False,
) -> None:
    """Run every configuration against the audio files and update their record sets."""
    setup_logging(verbose=verbose)

    missing = [path for path in audio if not path.exists()]
    if missing:
        typer.echo(f"Error: Input path does not exist: {missing[0]}", err=True)
        raise typer.Exit(1)
    if jobs < 1:
        typer.echo(f"Error: Invalid jobs '{jobs}'. Must be at least 1", err=True)
        raise typer.Exit(1)

    try:
        configs, diagnostics = load_configs(config)
        table = read_pulse_table(pulse_table) if pulse_table is not None else None
    except AcousticDetectError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    for diagnostic in diagnostics:
        typer.echo(f"Warning: {diagnostic.message}", err=True)

    paths = _collect_audio(audio)
    if not paths:
        typer.echo("Error: No audio files found", err=True)
        raise typer.Exit(1)

    engine = DetectionEngine(RecordStore(records), pulse_table=table, max_workers=jobs)
    with Timer("Detection run") as timer:
        results = engine.process_files(paths, configs)

    failed = False
    for result in results:
        typer.echo(result.summary())
        for diagnostic in result.diagnostics:
            typer.echo(f"  [{diagnostic.code}] {diagnostic.message}")
        failed = failed or not result.ok
    if failed:
        raise typer.Exit(1)
    elapsed = format_duration(timer.elapsed or 0.0)
    typer.echo(f"Processing complete in {elapsed}. Records: {records}")


def cli_main() -> None:
    """Entry point for the ``acousticdetect`` console script."""
    app()


if __name__ == "__main__":
    cli_main()
