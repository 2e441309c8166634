"""vidfeedback CLI entry point.

Offline tooling around stored feedback sessions: summarize a session, rebuild
its observable state at any offset, replay it in real time on the console, and
move it between machines as a single-file bundle.
"""

import asyncio
import logging
from collections import Counter
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from vidfeedback.bundle import export_bundle, import_bundle
from vidfeedback.config import EngineSettings
from vidfeedback.engine import FeedbackEngine
from vidfeedback.errors import VidFeedbackError
from vidfeedback.replay.scheduler import ReplayScheduler
from vidfeedback.replay.state import PlaybackState
from vidfeedback.session.ratings import carried_ratings, expand_categories, ratings_from_events
from vidfeedback.session.schema import FeedbackSession
from vidfeedback.storage import LocalDocumentStore, make_blob_store

app = typer.Typer(
    name="vidfeedback",
    help="Inspect, replay and move recorded video-feedback sessions.",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

SessionPath = Annotated[
    Path,
    typer.Argument(
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Session JSON file or .msgpack bundle.",
    ),
]


def _fail(e: VidFeedbackError, title: str = "Session Error") -> None:
    err_console.print(Panel(str(e), title=f"[red]{title}[/red]", border_style="red"))
    raise typer.Exit(1)


def _fmt_ms(ms: float) -> str:
    seconds, millis = divmod(int(round(ms)), 1000)
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes:02d}:{seconds:02d}.{millis:03d}"


def _ratings_line(ratings: dict) -> str:
    rated = {k: v for k, v in ratings.items() if v}
    if not rated:
        return "[dim]none[/dim]"
    return ", ".join(f"{k}={v}" for k, v in sorted(rated.items()))


def _describe(event) -> str:
    payload = event.payload
    if event.type == "video":
        detail = payload.action.value
        if payload.to is not None:
            detail += f" -> {payload.to:g}"
        return detail
    if event.type == "annotation":
        if payload.action == "clear":
            return "clear canvas"
        return f"stroke ({len(payload.path.points)} points, {payload.path.color})"
    if event.type == "marker":
        return repr(payload.text)
    return f"{payload.category}={payload.rating if payload.rating is not None else 'unrated'}"


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log engine activity (INFO) to stderr."),
    ] = False,
) -> None:
    """Configure logging for every command."""
    settings = EngineSettings.from_env()
    logging.basicConfig(
        level=logging.INFO if verbose else settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.command()
def inspect(
    session_file: SessionPath,
    events: Annotated[
        bool,
        typer.Option("--events", "-e", help="List every event."),
    ] = False,
) -> None:
    """Summarize a stored session."""
    try:
        session = import_bundle(session_file)
    except VidFeedbackError as e:
        _fail(e)

    ratings = expand_categories(session.categories, EngineSettings.from_env().max_rating)
    if not ratings:
        ratings = ratings_from_events(session.events)
    counts = Counter(e.type for e in session.events)
    kinds = ", ".join(f"{kind}={n}" for kind, n in sorted(counts.items())) or "none"
    track = session.audio_track

    console.print(Panel(
        f"  Video:      {session.video_id}\n"
        f"  Duration:   {_fmt_ms(session.duration_ms)}"
        f"{'' if session.is_finalized else ' [yellow](not finalized)[/yellow]'}\n"
        f"  Events:     {len(session.events)} ({kinds})\n"
        f"  Audio:      {len(track.chunks)} chunks, {_fmt_ms(track.total_duration)}\n"
        f"  Categories: {_ratings_line(ratings)}",
        title=f"[cyan]Session {session.id}[/cyan]",
        border_style="cyan",
    ))

    if events:
        table = Table("Offset", "Type", "Detail", "Id")
        for event in session.events:
            table.add_row(_fmt_ms(event.time_offset), event.type, _describe(event), event.id)
        console.print(table)


@app.command()
def state(
    session_file: SessionPath,
    at: Annotated[
        float,
        typer.Option("--at", "-t", min=0.0, help="Timeline offset in milliseconds."),
    ],
) -> None:
    """Show the observable replay state as of an offset."""
    try:
        session = import_bundle(session_file)
    except VidFeedbackError as e:
        _fail(e)

    carried = carried_ratings(session.categories, session.events, EngineSettings.from_env().max_rating)
    playback = PlaybackState.at(session.events, at, carried)
    video = playback.video
    marker = repr(playback.last_marker) if playback.last_marker is not None else "[dim]none[/dim]"
    console.print(Panel(
        f"  Video:       {_fmt_ms(video.position_at(at))} "
        f"({'playing' if video.playing else 'paused'}, rate {video.rate:g})\n"
        f"  Annotations: {len(playback.paths)} stroke(s) on canvas\n"
        f"  Categories:  {_ratings_line(playback.categories)}\n"
        f"  Last marker: {marker}",
        title=f"[cyan]State at {_fmt_ms(at)}[/cyan]",
        border_style="cyan",
    ))


async def _run_replay(session: FeedbackSession, seek: float, speed: float, max_sleep_ms: float) -> ReplayScheduler:
    scheduler = ReplayScheduler(
        speed=speed, max_sleep_ms=max_sleep_ms, max_rating=EngineSettings.from_env().max_rating
    )

    def _on_event(event) -> None:
        console.print(f"[dim]{_fmt_ms(scheduler.now())}[/dim]  [bold]{event.type:<10}[/bold] {_describe(event)}")

    scheduler.event_dispatched.subscribe(_on_event)
    scheduler.marker_reached.subscribe(lambda text: console.print(f"[yellow]Marker:[/] {text}"))
    scheduler.audio_started.subscribe(
        lambda chunk: console.print(
            f"[dim]{_fmt_ms(scheduler.now())}[/dim]  [magenta]audio[/magenta]      "
            f"{_fmt_ms(chunk.start_time)} +{chunk.duration:.0f}ms ({chunk.mime_type})"
        )
    )
    scheduler.desynced.subscribe(lambda e: console.print(f"[yellow]Desync:[/] event {e.event_id} clamped"))

    scheduler.start(session)
    if seek > 0:
        scheduler.seek(seek)
        console.print(
            f"[cyan]Seeked to {_fmt_ms(scheduler.cursor_ms)}[/cyan]: "
            f"{len(scheduler.annotations)} stroke(s), categories {_ratings_line(scheduler.categories)}"
        )
    try:
        await scheduler.run()
    finally:
        if scheduler.is_active:
            scheduler.stop()
    return scheduler


@app.command()
def replay(
    session_file: SessionPath,
    seek: Annotated[
        float,
        typer.Option("--seek", min=0.0, help="Start offset in milliseconds."),
    ] = 0.0,
    speed: Annotated[
        float,
        typer.Option("--speed", min=0.01, help="Playback speed multiplier."),
    ] = 1.0,
) -> None:
    """Replay a session in real time, printing each dispatched item."""
    settings = EngineSettings.from_env()
    try:
        session = import_bundle(session_file)
        console.print(
            f"\n[bold cyan]Replaying[/bold cyan] {session.id} "
            f"[dim]({_fmt_ms(session.duration_ms)} at {speed:g}x)[/dim]\n"
        )
        scheduler = asyncio.run(_run_replay(session, seek, speed, settings.replay_max_sleep_ms))
    except VidFeedbackError as e:
        _fail(e, "Replay Error")
    except KeyboardInterrupt:
        console.print("[yellow]Replay interrupted.[/yellow]")
        raise typer.Exit(130)

    console.print(Panel(
        f"[bold green]Replay complete[/bold green]\n\n"
        f"  Dispatched: {scheduler.dispatched_count} event(s)\n"
        f"  Canvas:     {len(scheduler.annotations)} stroke(s)\n"
        f"  Categories: {_ratings_line(scheduler.categories)}",
        title="[green]Done[/green]",
        border_style="green",
    ))


@app.command()
def export(
    session_file: SessionPath,
    dest: Annotated[
        Path,
        typer.Argument(
            dir_okay=False,
            resolve_path=True,
            help="Bundle path; .msgpack writes raw audio, anything else JSON with inline audio.",
        ),
    ],
) -> None:
    """Write a session and all of its audio into one portable file."""
    settings = EngineSettings.from_env()
    blob_store = make_blob_store(settings.storage_dir, settings.blob_endpoint)
    try:
        session = import_bundle(session_file)
        written = asyncio.run(export_bundle(session, dest, blob_store))
    except VidFeedbackError as e:
        _fail(e, "Export Error")
    console.print(f"[green]Exported[/green] {session.id} -> [dim]{written}[/dim]")


@app.command("import")
def import_(
    bundle_file: SessionPath,
    storage_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--storage-dir",
            file_okay=False,
            resolve_path=True,
            help="Store root (default: VIDFEEDBACK_STORAGE_DIR or ~/.vidfeedback).",
        ),
    ] = None,
) -> None:
    """Import a bundle into the local session store."""
    settings = EngineSettings.from_env()
    root = storage_dir or settings.storage_dir
    store = LocalDocumentStore(root)
    engine = FeedbackEngine(
        settings,
        blob_store=make_blob_store(root, settings.blob_endpoint),
        document_store=store,
    )
    try:
        session = import_bundle(bundle_file)
        saved = asyncio.run(engine.save_session(session))
    except VidFeedbackError as e:
        _fail(e, "Import Error")
    console.print(
        f"[green]Imported[/green] {saved.id} ({len(saved.audio_track.chunks)} chunks) "
        f"-> [dim]{store.path_for(saved.id)}[/dim]"
    )
