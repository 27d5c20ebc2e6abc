from __future__ import annotations

import asyncio
import random
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional

from shared.logging.logger import get_logger
from shared.runtime.errors import ResourceMissing
from shared.utils.recurrence import is_truthy

log = get_logger("services.streams.relay")

PLAYLIST_LOOP_REPEATS = 1000


@dataclass
class RelayMedia:
    video: Optional[Path] = None
    audio: Optional[Path] = None
    playlist: List[Path] = field(default_factory=list)

    @property
    def is_playlist(self) -> bool:
        return bool(self.playlist)


# ----------------------------------------------------------------------
# Media resolution
# ----------------------------------------------------------------------

def _resolve_path(raw: Any, media_root: Path) -> Path:
    path = Path(str(raw))
    return path if path.is_absolute() else media_root / path


def resolve_media(stream: Mapping[str, Any], media_root: Path | str = ".") -> RelayMedia:
    """
    Locate the input files for a stream. A missing required file raises
    ResourceMissing; the stream cannot start without it.
    """
    root = Path(media_root)
    stream_id = stream.get("id")

    playlist = stream.get("playlist") or []
    if playlist:
        paths = [_resolve_path(p, root) for p in playlist]
        for path in paths:
            if not path.exists():
                raise ResourceMissing(f"[{stream_id}] Playlist video not found: {path}", path=str(path))
        if is_truthy(stream.get("playlist_shuffle")):
            paths = random.sample(paths, len(paths))
        return RelayMedia(playlist=paths)

    if not stream.get("video_path"):
        raise ResourceMissing(f"[{stream_id}] Stream has no video source")
    video = _resolve_path(stream["video_path"], root)
    if not video.exists():
        raise ResourceMissing(f"[{stream_id}] Video file not found: {video}", path=str(video))

    audio = None
    if stream.get("audio_path"):
        audio = _resolve_path(stream["audio_path"], root)
        if not audio.exists():
            raise ResourceMissing(f"[{stream_id}] Audio file not found: {audio}", path=str(audio))

    return RelayMedia(video=video, audio=audio)


def output_target(stream: Mapping[str, Any]) -> str:
    base = str(stream.get("rtmp_url") or "").rstrip("/")
    return f"{base}/{stream.get('stream_key') or ''}"


def write_playlist_file(
    stream_id: str,
    paths: List[Path],
    *,
    loop: bool,
    temp_dir: Path | str = "temp",
) -> Path:
    concat_file = Path(temp_dir) / f"playlist_{stream_id}.txt"
    concat_file.parent.mkdir(parents=True, exist_ok=True)

    entries = [f"file '{p.as_posix()}'\n" for p in paths]
    repeats = PLAYLIST_LOOP_REPEATS if loop else 1
    concat_file.write_text("".join(entries) * repeats, encoding="utf-8")
    return concat_file


# ----------------------------------------------------------------------
# Argument builder
# ----------------------------------------------------------------------

def _advanced_video_args(stream: Mapping[str, Any]) -> List[str]:
    bitrate = int(stream.get("bitrate") or 2500)
    fps = int(stream.get("fps") or 30)
    resolution = str(stream.get("resolution") or "1280x720")
    return [
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "zerolatency",
        "-b:v", f"{bitrate}k",
        "-bufsize", f"{bitrate * 2}k",
        "-maxrate", f"{int(bitrate * 1.5)}k",
        "-pix_fmt", "yuv420p",
        "-g", str(fps * 2),
        "-s", resolution,
        "-r", str(fps),
        "-c:a", "copy",
    ]


def build_relay_args(
    stream: Mapping[str, Any],
    media: RelayMedia,
    duration: Optional[int],
    *,
    playlist_file: Optional[Path] = None,
) -> List[str]:
    """
    Ordered ffmpeg arguments for one relay run.

    `-stream_loop` must precede the `-i` it applies to and `-t` must
    precede the output target; ffmpeg ignores them otherwise.
    """
    loop = is_truthy(stream.get("loop_video", True))
    args: List[str] = ["-re"]

    if media.is_playlist:
        if playlist_file is None:
            raise ValueError("playlist_file is required for playlist streams")
        args += ["-f", "concat", "-safe", "0", "-i", str(playlist_file)]
        if is_truthy(stream.get("use_advanced_settings")):
            args += _advanced_video_args(stream)
        else:
            args += ["-c", "copy"]
    else:
        if loop:
            args += ["-stream_loop", "-1"]
        args += ["-i", str(media.video)]

        if media.audio is not None:
            args += ["-stream_loop", "-1", "-i", str(media.audio)]
            args += ["-map", "0:v:0", "-map", "1:a:0", "-c", "copy", "-shortest"]
        else:
            args += ["-c", "copy"]

    if duration and duration > 0:
        args += ["-t", str(duration)]

    args += ["-f", "flv", output_target(stream)]
    return args


# ----------------------------------------------------------------------
# Process launcher
# ----------------------------------------------------------------------

class RelayLauncher:
    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        *,
        temp_dir: Path | str = "temp",
        media_root: Path | str = ".",
    ):
        self._ffmpeg_path = ffmpeg_path
        self._temp_dir = Path(temp_dir)
        self._media_root = Path(media_root)

    @property
    def ffmpeg_path(self) -> str:
        # Prefer configured path; fall back to system ffmpeg if missing
        configured = Path(self._ffmpeg_path)
        if configured.exists() or shutil.which(self._ffmpeg_path):
            return str(self._ffmpeg_path)
        log.warning(f"Configured ffmpeg not found at {configured}; falling back to PATH")
        return "ffmpeg"

    def prepare(self, stream: Mapping[str, Any], duration: Optional[int]) -> List[str]:
        media = resolve_media(stream, self._media_root)
        playlist_file = None
        if media.is_playlist:
            playlist_file = write_playlist_file(
                str(stream.get("id")),
                media.playlist,
                loop=is_truthy(stream.get("loop_video", True)),
                temp_dir=self._temp_dir,
            )
        return build_relay_args(stream, media, duration, playlist_file=playlist_file)

    def cleanup(self, stream_id: str) -> None:
        concat_file = self._temp_dir / f"playlist_{stream_id}.txt"
        try:
            concat_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"[{stream_id}] Failed to remove playlist file: {e}")

    async def spawn(self, args: List[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self.ffmpeg_path,
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )

    async def kill_by_token(self, token: str) -> bool:
        """
        Terminate any ffmpeg process whose command line contains `token`
        (the stream key). Used when the runtime lost track of its child.
        """
        if not token:
            return False

        pattern = f"ffmpeg.*{re.escape(token)}"
        try:
            process = await asyncio.create_subprocess_exec(
                "pkill", "-f", pattern,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            log.warning(f"pkill unavailable, cannot kill orphaned relay: {e}")
            return False

        code = await process.wait()
        # pkill exits 1 when nothing matched
        return code == 0
