"""
FFmpeg transcode invoker.

Runs one ffmpeg process per job and produces an HLS package in a target
directory. Output is written to a private staging directory next to the
target and swapped into place only after ffmpeg exits 0 and the playlists
check out, so re-running a job after a crash or failure never mixes stale
and fresh segments.

The invoker knows nothing about queues or retries; the caller passes a
cancellation event and gets back artifact names or an exception.
"""

import asyncio
import logging
import os
import shutil
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple

from config import (
    ERROR_LOG_MAX_LENGTH,
    FFMPEG_PATH,
    STALE_OUTPUT_SECONDS,
    TERMINATE_GRACE_SECONDS,
    TRANSCODE_TIMEOUT,
)
from worker.profiles import TranscodeProfile

logger = logging.getLogger(__name__)

STAGING_MARKER = ".partial-"
BACKUP_MARKER = ".old-"

# Read size when draining combined ffmpeg output
OUTPUT_CHUNK_SIZE = 64 * 1024

# Characters of trailing ffmpeg output included in str(TranscodeError)
OUTPUT_TAIL_LENGTH = 300


class TranscodeError(Exception):
    """The transcode attempt failed."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output

    def __str__(self) -> str:
        message = super().__str__()
        if self.output:
            return f"{message}, output: {self.output.strip()[-OUTPUT_TAIL_LENGTH:]}"
        return message


class TranscodeTimeoutError(TranscodeError):
    """ffmpeg exceeded the configured wall-clock limit and was killed."""


class TranscodeCancelledError(TranscodeError):
    """The caller cancelled the attempt; ffmpeg was terminated."""


class Transcoder(ABC):
    """Interface the worker loop uses to run a transcode."""

    @abstractmethod
    async def transcode(
        self,
        source_path: Path,
        output_target: Path,
        profile: TranscodeProfile,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[str]:
        """
        Produce the artifact set for `profile` at `output_target`.

        Returns:
            Artifact file names relative to output_target

        Raises:
            TranscodeError: On any failure (including cancellation and timeout)
        """


def build_transcode_command(
    ffmpeg_path: str,
    source_path: Path,
    output_dir: Path,
    name: str,
    profile: TranscodeProfile,
) -> List[str]:
    """
    Build the ffmpeg argument list for a profile.

    Deterministic for a given input: same paths and profile give the same command.

    Single rendition layout: {name}.m3u8 + {name}_000.ts, {name}_001.ts, ...
    Ladder layout: master {name}.m3u8, variants {name}_{rendition}.m3u8,
    segments {name}_{rendition}_000.ts, ...
    """
    ext = profile.segment_extension
    cmd = [ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-i", str(source_path)]

    if not profile.is_ladder:
        rendition = profile.renditions[0]
        if rendition.height:
            cmd += ["-vf", f"scale=-2:{rendition.height}"]
        cmd += [
            "-c:v",
            profile.video_codec,
            "-b:v",
            rendition.video_bitrate,
            "-maxrate",
            rendition.video_bitrate,
            "-bufsize",
            rendition.bufsize,
            "-c:a",
            profile.audio_codec,
            "-b:a",
            rendition.audio_bitrate,
        ]
        segment_pattern = output_dir / f"{name}_%03d.{ext}"
        playlist = output_dir / f"{name}.m3u8"
    else:
        count = len(profile.renditions)
        splits = "".join(f"[v{i}]" for i in range(count))
        filters = [f"[0:v]split={count}{splits}"]
        for i, rendition in enumerate(profile.renditions):
            scale = f"scale=-2:{rendition.height}" if rendition.height else "null"
            filters.append(f"[v{i}]{scale}[v{i}out]")
        cmd += ["-filter_complex", ";".join(filters)]

        for i, rendition in enumerate(profile.renditions):
            cmd += [
                "-map",
                f"[v{i}out]",
                f"-c:v:{i}",
                profile.video_codec,
                f"-b:v:{i}",
                rendition.video_bitrate,
                f"-maxrate:v:{i}",
                rendition.video_bitrate,
                f"-bufsize:v:{i}",
                rendition.bufsize,
            ]
        for i, rendition in enumerate(profile.renditions):
            cmd += ["-map", "0:a:0", f"-c:a:{i}", profile.audio_codec, f"-b:a:{i}", rendition.audio_bitrate]

        stream_map = " ".join(f"v:{i},a:{i},name:{r.name}" for i, r in enumerate(profile.renditions))
        cmd += ["-var_stream_map", stream_map, "-master_pl_name", f"{name}.m3u8"]
        segment_pattern = output_dir / f"{name}_%v_%03d.{ext}"
        playlist = output_dir / f"{name}_%v.m3u8"

    cmd += [
        "-preset",
        profile.preset,
        "-g",
        str(profile.gop_size),
        "-sc_threshold",
        "0",
        "-hls_time",
        str(profile.segment_duration),
        "-hls_list_size",
        "0",
        "-hls_playlist_type",
        profile.playlist_type,
        "-hls_segment_type",
        profile.segment_format,
    ]
    if profile.segment_format == "fmp4":
        cmd += ["-hls_fmp4_init_filename", f"{name}_init.mp4"]
    cmd += list(profile.extra_args)
    cmd += ["-hls_segment_filename", str(segment_pattern), "-f", "hls", str(playlist)]
    return cmd


def list_artifacts(directory: Path) -> List[str]:
    """Relative paths of all files under a directory, sorted."""
    return sorted(str(p.relative_to(directory)) for p in directory.rglob("*") if p.is_file())


def validate_playlist(playlist_path: Path, _depth: int = 0) -> Tuple[bool, Optional[str]]:
    """
    Check that a playlist exists, is HLS, and every URI it lists is present.

    Master playlists are followed one level into their variant playlists.

    Returns:
        Tuple[bool, Optional[str]]: (valid, error_message)
    """
    if not playlist_path.is_file():
        return False, f"Playlist not found: {playlist_path.name}"

    try:
        lines = playlist_path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as e:
        return False, f"Cannot read playlist {playlist_path.name}: {e}"

    if not lines or not lines[0].startswith("#EXTM3U"):
        return False, f"Invalid playlist header in {playlist_path.name}"

    uris = [line.strip() for line in lines if line.strip() and not line.startswith("#")]
    if not uris:
        return False, f"Playlist {playlist_path.name} lists no media"

    for uri in uris:
        entry = playlist_path.parent / uri
        if not entry.is_file():
            return False, f"Playlist {playlist_path.name} references missing file {uri}"
        if uri.endswith(".m3u8") and _depth == 0:
            ok, error = validate_playlist(entry, _depth + 1)
            if not ok:
                return False, error

    return True, None


def sweep_stale_outputs(output_target: Path, max_age_seconds: float = STALE_OUTPUT_SECONDS) -> int:
    """
    Remove staging and backup directories left behind by interrupted runs.

    Only directories not modified for max_age_seconds are removed; a live run
    on the same target keeps writing segments into its staging directory.
    """
    removed = 0
    parent = output_target.parent
    if not parent.is_dir():
        return removed
    cutoff = time.time() - max_age_seconds
    for prefix in (f".{output_target.name}{STAGING_MARKER}", f".{output_target.name}{BACKUP_MARKER}"):
        for leftover in parent.glob(f"{prefix}*"):
            try:
                if leftover.stat().st_mtime > cutoff:
                    continue
            except FileNotFoundError:
                # Published or cleaned up by its own run meanwhile
                continue
            shutil.rmtree(leftover, ignore_errors=True)
            removed += 1
    if removed:
        logger.info(f"Removed {removed} leftover output dir(s) for {output_target.name}")
    return removed


def publish_output(staging_dir: Path, output_target: Path) -> None:
    """
    Swap a finished staging directory into place.

    The previous target, if any, is renamed aside first and deleted only after
    the new one is in place, so the target is never a mix of two runs.
    """
    backup: Optional[Path] = None
    if output_target.exists():
        backup = output_target.parent / f".{output_target.name}{BACKUP_MARKER}{uuid.uuid4().hex[:8]}"
        try:
            output_target.rename(backup)
            # A rename keeps the old mtime; refresh it so the sweep sees the backup as live
            os.utime(backup)
        except FileNotFoundError:
            backup = None
    try:
        staging_dir.rename(output_target)
    except OSError:
        if backup is not None:
            backup.rename(output_target)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)


async def terminate_process(process: asyncio.subprocess.Process, grace: float, context: str = "FFmpeg") -> None:
    """
    Stop a subprocess: SIGTERM, then SIGKILL if it outlives the grace period.

    Handles the race where the process exits between the returncode check
    and the signal.
    """
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        logger.warning(f"{context} (pid {process.pid}) ignored SIGTERM for {grace:.1f}s, killing")

    try:
        process.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=5)
    except asyncio.TimeoutError:
        logger.error(f"{context} (pid {process.pid}) did not terminate after kill")


class FFmpegTranscoder(Transcoder):
    """Transcoder that shells out to ffmpeg."""

    def __init__(
        self,
        ffmpeg_path: str = FFMPEG_PATH,
        timeout: float = TRANSCODE_TIMEOUT,
        terminate_grace: float = TERMINATE_GRACE_SECONDS,
        stale_after: float = STALE_OUTPUT_SECONDS,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self.terminate_grace = terminate_grace
        self.stale_after = stale_after

    def build_command(self, source_path: Path, output_dir: Path, name: str, profile: TranscodeProfile) -> List[str]:
        return build_transcode_command(self.ffmpeg_path, source_path, output_dir, name, profile)

    async def transcode(
        self,
        source_path: Path,
        output_target: Path,
        profile: TranscodeProfile,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[str]:
        source_path = Path(source_path)
        output_target = Path(output_target)
        name = output_target.name

        if cancel_event is not None and cancel_event.is_set():
            raise TranscodeCancelledError(f"Transcode of {name} cancelled before start")
        if not source_path.is_file():
            raise TranscodeError(f"Source file not found: {source_path}")

        output_target.parent.mkdir(parents=True, exist_ok=True)
        sweep_stale_outputs(output_target, self.stale_after)
        staging_dir = output_target.parent / f".{name}{STAGING_MARKER}{uuid.uuid4().hex[:8]}"
        staging_dir.mkdir()

        cmd = self.build_command(source_path, staging_dir, name, profile)
        context = f"FFmpeg {profile.name} {name}"
        logger.info(f"Starting {context}")
        logger.debug(f"Command: {' '.join(cmd)}")
        started = time.monotonic()

        published = False
        try:
            returncode, output = await self._run(cmd, cancel_event, context)
            if returncode != 0:
                logger.warning(f"{context} exited with code {returncode}: {output[-ERROR_LOG_MAX_LENGTH:]}")
                raise TranscodeError(f"ffmpeg exited with code {returncode}", returncode=returncode, output=output)

            ok, error = validate_playlist(staging_dir / f"{name}.m3u8")
            if not ok:
                raise TranscodeError(f"ffmpeg output incomplete: {error}", returncode=returncode, output=output)

            artifacts = list_artifacts(staging_dir)
            try:
                publish_output(staging_dir, output_target)
            except OSError as e:
                raise TranscodeError(f"Failed to publish output to {output_target}: {e}") from e
            published = True
        finally:
            if not published:
                shutil.rmtree(staging_dir, ignore_errors=True)

        logger.info(f"{context} finished in {time.monotonic() - started:.1f}s ({len(artifacts)} files)")
        return artifacts

    async def _run(
        self,
        cmd: List[str],
        cancel_event: Optional[asyncio.Event],
        context: str,
    ) -> Tuple[int, str]:
        """
        Run ffmpeg to completion, cancellation, or timeout.

        Returns:
            (returncode, combined stdout/stderr)
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                # Own session: terminal SIGINT reaches the worker, which then stops ffmpeg itself
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise TranscodeError(f"Cannot execute {cmd[0]}: {e}") from e

        chunks: List[bytes] = []

        async def drain_and_wait() -> None:
            while True:
                chunk = await process.stdout.read(OUTPUT_CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
            await process.wait()

        def collected() -> str:
            return b"".join(chunks).decode("utf-8", errors="replace")

        run_task = asyncio.create_task(drain_and_wait())
        waiters = {run_task}
        cancel_task: Optional[asyncio.Task] = None
        if cancel_event is not None:
            cancel_task = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.timeout or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await terminate_process(process, self.terminate_grace, context)
            run_task.cancel()
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        if run_task in done:
            # Surface unexpected read errors
            run_task.result()
            return process.returncode, collected()

        await terminate_process(process, self.terminate_grace, context)
        try:
            await asyncio.wait_for(run_task, timeout=5)
        except (asyncio.TimeoutError, OSError):
            run_task.cancel()

        if cancel_task is not None and cancel_task in done:
            logger.info(f"{context} cancelled, process terminated")
            raise TranscodeCancelledError(f"{context} cancelled", returncode=process.returncode, output=collected())

        raise TranscodeTimeoutError(
            f"{context} timed out after {self.timeout:.0f}s",
            returncode=process.returncode,
            output=collected(),
        )
