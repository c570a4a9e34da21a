"""Entry-point for the Khutbah Notes command-line client."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console

from khutbah_notes.bootstrap import BootstrapError, initialize_app
from khutbah_notes.capture.devices import SoundDeviceEngine, SoundDevicePermissionProvider
from khutbah_notes.capture.recorder import AudioCapture, CaptureError
from khutbah_notes.config import AppConfig
from khutbah_notes.logging_utils import build_cli_handlers, configure_logging
from khutbah_notes.models import AudioUploadTrigger, Lecture, LectureStatus, utcnow
from khutbah_notes.remote.local import LocalAnonymousAuth, LocalBlobStore, SQLiteDocumentStore
from khutbah_notes.services.account import AccountDeletionError
from khutbah_notes.services.settings import SettingsStore
from khutbah_notes.services.upload import NoRecoverableSourceError
from khutbah_notes.session import LectureSession
from khutbah_notes.ui.overview import LectureOverviewUI, collect_overview


LOGGER = logging.getLogger("khutbah_notes.cli")

T = TypeVar("T")

cli = typer.Typer(add_completion=False, help="Khutbah Notes recording and upload commands")


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_cli_handlers(storage_root))


def _load_config() -> AppConfig:
    try:
        config = initialize_app()
    except BootstrapError as error:
        typer.echo(f"Unable to prepare storage: {error}")
        raise typer.Exit(code=1) from error
    _prepare_logging(config.storage_root)
    return config


def build_session(config: AppConfig) -> LectureSession:
    """Return a session backed by the local document, blob and auth adapters."""

    return LectureSession(
        config,
        documents=SQLiteDocumentStore(config.database_file),
        blob_store=LocalBlobStore(config.blob_root),
        auth=LocalAnonymousAuth(SettingsStore(config.settings_file)),
    )


def _run_session(
    config: AppConfig, action: Callable[[LectureSession], Awaitable[T]]
) -> T:
    async def _main() -> T:
        session = build_session(config)
        await session.start()
        try:
            return await action(session)
        finally:
            await session.close()

    return asyncio.run(_main())


def _describe(lecture: Optional[Lecture]) -> str:
    if lecture is None:
        return "Lecture is no longer listed."
    text = f"{lecture.title} [{lecture.id}]: {lecture.status.value}"
    if lecture.duration_minutes is not None:
        text += f", {lecture.duration_minutes} min"
    if lecture.status is LectureStatus.FAILED and lecture.error_message:
        text += f" ({lecture.error_message})"
    return text


@cli.command()
def upload(
    audio: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
        help="Audio file to upload",
    ),
    title: str = typer.Option(..., "--title", help="Lecture title"),
) -> None:
    """Import an existing audio file and upload it."""

    config = _load_config()

    async def _upload(session: LectureSession) -> Optional[Lecture]:
        lecture = await session.create_lecture(title, audio, trigger=AudioUploadTrigger.MANUAL)
        typer.echo(f"Created lecture {lecture.id}; uploading…")
        await session.wait_idle()
        return session.lecture(lecture.id)

    result = _run_session(config, _upload)
    typer.echo(_describe(result))
    if result is not None and result.status is LectureStatus.FAILED:
        raise typer.Exit(code=1)


@cli.command()
def record(title: str = typer.Option(..., "--title", help="Lecture title")) -> None:
    """Record from the default microphone, then upload the recording."""

    config = _load_config()
    console = Console()

    async def _record(session: LectureSession) -> Optional[Lecture]:
        capture = AudioCapture(
            SoundDeviceEngine(),
            SoundDevicePermissionProvider(),
            output_dir=config.recordings_root,
        )
        try:
            started = await capture.start_capture()
        except CaptureError as error:
            typer.echo(f"Recording could not start: {error}")
            raise typer.Exit(code=1) from error
        if not started:
            typer.echo("Microphone access was not granted.")
            raise typer.Exit(code=1)

        meter = asyncio.get_running_loop().create_task(capture.run_meter())
        console.print("[bold]Recording.[/bold] Press Enter to pause/resume, type 's' to stop.")
        while True:
            command = (await asyncio.to_thread(input)).strip().lower()
            if command == "s":
                break
            if capture.is_paused:
                capture.resume()
                console.print(f"Resumed at {capture.elapsed_time:.0f}s")
            else:
                capture.pause()
                console.print(f"Paused at {capture.elapsed_time:.0f}s")

        lecture = await session.finish_capture(capture, title)
        await meter
        if lecture is None:
            return None
        console.print(f"Captured {capture.last_duration:.0f}s; uploading…")
        await session.wait_idle()
        return session.lecture(lecture.id)

    result = _run_session(config, _record)
    typer.echo(_describe(result))


@cli.command()
def resume() -> None:
    """Wait for the interrupted uploads the session resumed on start."""

    config = _load_config()

    async def _resume(session: LectureSession) -> int:
        records = session.restored_recordings
        await session.wait_idle()
        for record in records:
            typer.echo(_describe(session.lecture(record.id)))
        return len(records)

    count = _run_session(config, _resume)
    typer.echo(f"Resumed {count} pending upload(s).")


@cli.command()
def retry(lecture_id: str = typer.Argument(..., help="Lecture id to upload again")) -> None:
    """Retry a failed upload."""

    config = _load_config()

    async def _retry(session: LectureSession) -> Optional[Lecture]:
        if not session.retry_upload(lecture_id):
            typer.echo("An upload for this lecture is already running.")
        await session.wait_idle()
        return session.lecture(lecture_id)

    try:
        result = _run_session(config, _retry)
    except NoRecoverableSourceError as error:
        typer.echo(f"Cannot retry {lecture_id}: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(_describe(result))
    if result is not None and result.status is LectureStatus.FAILED:
        raise typer.Exit(code=1)


@cli.command()
def overview() -> None:
    """Render the lecture list with Rich."""

    config = _load_config()

    async def _overview(session: LectureSession):
        await session.wait_idle()
        return collect_overview(session.lectures, session.folders, session.usage)

    snapshot = _run_session(config, _overview)
    LectureOverviewUI(now=utcnow()).render(snapshot)


@cli.command("delete-account")
def delete_account(
    yes: bool = typer.Option(False, "--yes", help="Confirm deletion without prompting"),
) -> None:
    """Delete all server-side data for the local user, then clear local state."""

    if not yes:
        typer.echo("Refusing to delete the account without --yes.")
        raise typer.Exit(code=1)

    config = _load_config()

    async def _delete(session: LectureSession) -> None:
        await session.delete_account()

    try:
        _run_session(config, _delete)
    except AccountDeletionError as error:
        typer.echo(f"Account deletion failed: {error}")
        raise typer.Exit(code=1) from error
    typer.echo("Account deleted.")


if __name__ == "__main__":
    cli()
