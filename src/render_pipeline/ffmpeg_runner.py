"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module wraps one external encoder invocation per render job.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Progress parsing from FFmpeg's diagnostic (stderr) stream
- Process tree cleanup via psutil
- Error classification for logging and error_detail
- Artifact preservation on failure
"""

import logging
import os
import re
import shlex
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import imageio_ffmpeg
import psutil

from .effects import SPEED, build_encode_plan, canonical_effects
from .models import EffectSettings, EncoderSettings

logger = logging.getLogger(__name__)

# "time=00:01:23.45" in stats lines, "out_time=00:01:23.456789" with -progress
TIME_RE = re.compile(r"(?:^|[\s_])time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
FRAME_RE = re.compile(r"frame=\s*(\d+)")
FPS_RE = re.compile(r"fps=\s*([\d.]+)")
SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")
# "Stream #0:1[0x2](und): Audio: aac ..." in the input banner
AUDIO_STREAM_RE = re.compile(r"Stream #\d+:\d+\S*:\s*Audio:")

STDERR_TAIL_LINES = 200
STREAM_CHECK_TIMEOUT_S = 60
ARTIFACT_PATTERNS = ("ffmpeg_error_*.log", "ffmpeg_cmd_*.sh")

ProgressCallback = Callable[[int], None]


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"        # File not found, invalid format, codec error
    TRANSIENT = "transient"        # Network timeout, disk I/O stall
    TIMEOUT = "timeout"            # Global or no-progress timeout
    START_FAILED = "start_failed"  # Binary missing or not executable


@dataclass
class FfmpegProgress:
    """Live encoder progress metrics."""
    current_time_s: float = 0.0      # Position in the output, seconds
    total_duration_s: float = 0.0    # Expected output duration (0 = unknown)
    percent: int = 0                 # Highest percentage reported so far
    fps: float = 0.0
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0
    last_update: float = 0.0         # Timestamp of the last diagnostic line


@dataclass
class FfmpegResult:
    """Result of one encoder invocation."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    def failure_text(self) -> str:
        """Captured failure description for error_detail."""
        kind = self.error_type.value if self.error_type else "unknown"
        tail = self.stderr.strip()[-1500:] if self.stderr else "no diagnostic output"
        return f"ffmpeg failed ({kind}, exit {self.returncode}): {tail}"


def _hms_to_seconds(h: str, m: str, s: str) -> float:
    return int(h) * 3600 + int(m) * 60 + float(s)


class FfmpegRunner:
    """One encoder process at a time, with timeouts and live progress.

    A runner keeps per-invocation state, so each worker owns its own runner.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=1800, no_progress_timeout_s=120)
        >>> result = runner.encode(
        ...     "https://cdn.example.com/in.mp4",
        ...     ["speed", "watermark"],
        ...     "/tmp/out.mp4",
        ...     progress_callback=lambda pct: print(f"{pct}%"),
        ... )
        >>> result.success
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: Optional[int] = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        temp_dir: Optional[str] = None,
        encoder_settings: Optional[EncoderSettings] = None,
        effect_settings: Optional[EffectSettings] = None,
        poll_interval_s: float = 0.5,
        max_failure_artifacts: int = 50,
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: Encoder binary (None = bundled imageio-ffmpeg binary)
            global_timeout_s: Maximum duration for one encode
            no_progress_timeout_s: Kill if stderr is silent for N seconds (None = off)
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            temp_dir: Directory for failure artifacts
            encoder_settings: Codec settings used to build the argument list
            effect_settings: Effect parameters used to build the argument list
            poll_interval_s: How often timeouts are checked while waiting
            max_failure_artifacts: Newest logs (and scripts) kept in temp_dir;
                older ones are deleted after each save (0 = keep all)
        """
        self.ffmpeg_path = ffmpeg_path
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.temp_dir = temp_dir
        self.encoder_settings = encoder_settings or EncoderSettings()
        self.effect_settings = effect_settings or EffectSettings()
        self.poll_interval_s = poll_interval_s
        self.max_failure_artifacts = max_failure_artifacts

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._progress_callback: Optional[ProgressCallback] = None
        self._time_scale = 1.0
        self._duration_seen = False
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._monitor_thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(
        cls, encoder: EncoderSettings, effects: Optional[EffectSettings] = None
    ) -> "FfmpegRunner":
        return cls(
            ffmpeg_path=encoder.ffmpeg_path,
            global_timeout_s=encoder.global_timeout_s,
            no_progress_timeout_s=encoder.no_progress_timeout_s,
            kill_grace_period_s=encoder.kill_grace_period_s,
            save_artifacts_on_failure=encoder.save_artifacts_on_failure,
            temp_dir=encoder.work_dir,
            encoder_settings=encoder,
            effect_settings=effects,
            max_failure_artifacts=encoder.max_failure_artifacts,
        )

    def encode(
        self,
        input_reference: str,
        requested_effects: Iterable[str],
        output_path: str,
        progress_callback: Optional[ProgressCallback] = None,
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        """Re-encode input_reference with the requested effects into output_path.

        Args:
            input_reference: Source media (path or URL readable by FFmpeg)
            requested_effects: Effect names, applied in canonical order
            output_path: Destination file
            progress_callback: Called with a strictly increasing percentage (0-99)
            expected_duration: Input duration in seconds if known; otherwise it
                is read from FFmpeg's Duration banner

        Raises:
            UnknownEffectError: If an effect name is not supported
        """
        requested_effects = list(requested_effects)
        has_audio = True
        if SPEED in canonical_effects(requested_effects):
            has_audio = self.has_audio_stream(input_reference)

        plan = build_encode_plan(
            input_reference,
            requested_effects,
            output_path,
            encoder=self.encoder_settings,
            effects=self.effect_settings,
            has_audio=has_audio,
        )
        cmd = [self._get_ffmpeg_exe()] + plan.args
        return self._run_ffmpeg(
            cmd,
            expected_duration=expected_duration,
            time_scale=plan.time_scale,
            progress_callback=progress_callback,
        )

    def has_audio_stream(self, input_reference: str) -> bool:
        """Whether the input carries an audio stream, read from FFmpeg's input banner.

        Returns True when the banner cannot be read, so the encode itself
        reports the real problem with the input.
        """
        cmd = [self._get_ffmpeg_exe(), "-hide_banner", "-i", input_reference]
        try:
            # No output file: ffmpeg prints the input streams and exits non-zero
            proc = subprocess.run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                timeout=STREAM_CHECK_TIMEOUT_S,
                start_new_session=True,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not inspect streams of %s: %s", input_reference, e)
            return True

        banner = proc.stderr or ""
        if "Stream #" not in banner:
            return True
        has_audio = AUDIO_STREAM_RE.search(banner) is not None
        if not has_audio:
            logger.info("Input %s has no audio stream; speed retimes video only", input_reference)
        return has_audio

    def _run_ffmpeg(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None,
        time_scale: float = 1.0,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring."""
        start_time = time.time()
        self._time_scale = time_scale
        self._duration_seen = False
        self._progress_callback = progress_callback
        self._stderr_tail = deque(maxlen=STDERR_TAIL_LINES)
        self._progress = FfmpegProgress(
            total_duration_s=(expected_duration or 0.0) * time_scale,
            last_update=start_time,
        )

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,  # Line buffered; \r-terminated stats lines count as lines
                start_new_session=True,  # Terminal Ctrl-C reaches the worker only
            )
        except OSError as e:
            logger.error("Failed to start encoder %s: %s", cmd[0], e)
            return FfmpegResult(
                success=False,
                returncode=-1,
                stderr=f"{type(e).__name__}: {e}",
                duration_s=time.time() - start_time,
                error_type=FfmpegErrorType.START_FAILED,
                final_progress=self._progress,
            )

        try:
            self._monitor_thread = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                daemon=True,
            )
            self._monitor_thread.start()

            timeout_type = self._wait_with_timeouts(start_time)
            if timeout_type:
                logger.warning(
                    "Encoder %s timeout after %.1fs, killing pid %s",
                    timeout_type, time.time() - start_time, self._process.pid,
                )
                self._kill_process_tree()
                returncode = -1
            else:
                returncode = self._process.returncode

            self._monitor_thread.join(timeout=2)
            stderr = "\n".join(self._stderr_tail)
            duration = time.time() - start_time

            error_type = None
            if timeout_type:
                error_type = FfmpegErrorType.TIMEOUT
                stderr = f"{stderr}\n{timeout_type} timeout exceeded".strip()
            elif returncode != 0:
                error_type = self._classify_error(stderr)

            artifacts = []
            if returncode != 0 and self.save_artifacts_on_failure:
                artifacts = self._save_failure_artifacts(cmd, stderr)

            return FfmpegResult(
                success=(returncode == 0),
                returncode=returncode,
                stderr=stderr,
                duration_s=duration,
                error_type=error_type,
                final_progress=self._progress,
                artifacts_saved=artifacts,
            )

        except BaseException:
            self._kill_process_tree()
            raise

        finally:
            self._process = None
            self._progress_callback = None

    def _wait_with_timeouts(self, start_time: float) -> Optional[str]:
        """Wait for exit. Returns "global" or "no_progress" if a timeout fired."""
        deadline = start_time + self.global_timeout_s
        while True:
            try:
                self._process.wait(timeout=self.poll_interval_s)
                return None
            except subprocess.TimeoutExpired:
                pass

            now = time.time()
            if now >= deadline:
                return "global"
            if (
                self.no_progress_timeout_s is not None
                and now - self._progress.last_update > self.no_progress_timeout_s
            ):
                return "no_progress"

    def _monitor_progress(self, stderr_stream) -> None:
        """Consume the diagnostic stream line by line until EOF."""
        try:
            for line in stderr_stream:
                self._handle_line(line)
        except (OSError, ValueError) as e:
            # Pipe closed under us while the process was being killed
            logger.debug("Encoder stderr closed: %s", e)

    def _handle_line(self, line: str) -> None:
        """Parse one diagnostic line.

        Output is free text: lines may be missing, repeated, or carry an
        earlier timestamp than a previous line. Percent only ever increases.
        """
        line = line.strip()
        if not line:
            return

        self._stderr_tail.append(line)
        self._progress.last_update = time.time()

        if not self._duration_seen:
            match = DURATION_RE.search(line)
            if match:
                # Only the first Duration: belongs to the main input
                self._duration_seen = True
                if not self._progress.total_duration_s:
                    self._progress.total_duration_s = (
                        _hms_to_seconds(*match.groups()) * self._time_scale
                    )

        match = FRAME_RE.search(line)
        if match:
            self._progress.frame = int(match.group(1))
        match = FPS_RE.search(line)
        if match:
            self._progress.fps = float(match.group(1))
        match = SPEED_RE.search(line)
        if match:
            self._progress.speed = float(match.group(1))

        match = TIME_RE.search(line)
        if not match:
            return
        self._progress.current_time_s = _hms_to_seconds(*match.groups())

        total = self._progress.total_duration_s
        if total <= 0:
            return
        percent = min(99, max(0, int(self._progress.current_time_s / total * 100)))
        if percent <= self._progress.percent:
            return
        self._progress.percent = percent

        if self._progress_callback:
            try:
                self._progress_callback(percent)
            except Exception:
                # A failing progress write must not stop stderr draining
                logger.exception("Progress callback failed at %d%%", percent)

    def _kill_process_tree(self) -> None:
        """Kill the encoder and all its children.

        Kill sequence:
        1. SIGTERM to every process in the tree
        2. Wait grace period
        3. SIGKILL survivors
        """
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
        except psutil.NoSuchProcess:
            return

        procs = [parent] + parent.children(recursive=True)
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("Encoder pid %s did not exit after SIGKILL", self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify an FFmpeg failure from its stderr."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "no such filter",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        # I/O errors, refused connections, unknown failures
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stderr tail
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}_{threading.get_ident()}"

        log_path = temp_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(shlex.join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write((stderr or "(empty)") + "\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save error log %s: %s", log_path, e)

        script_path = temp_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")
                f.write(" \\\n  ".join(shlex.quote(arg) for arg in cmd) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save command script %s: %s", script_path, e)

        self._prune_failure_artifacts(temp_dir)
        return artifacts

    def _prune_failure_artifacts(self, temp_dir: Path) -> None:
        """Keep only the newest max_failure_artifacts files of each kind."""
        if self.max_failure_artifacts <= 0:
            return
        for pattern in ARTIFACT_PATTERNS:
            paths = []
            for path in temp_dir.glob(pattern):
                try:
                    paths.append((path.stat().st_mtime_ns, path.name, path))
                except OSError:
                    continue  # Removed by another worker
            paths.sort(reverse=True)
            for _, _, path in paths[self.max_failure_artifacts:]:
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning("Failed to remove old artifact %s: %s", path, e)

    def _get_temp_dir(self) -> Path:
        """Artifact directory: configured temp_dir, else TMPDIR, else /tmp."""
        if self.temp_dir:
            temp_dir = Path(self.temp_dir)
        elif "TMPDIR" in os.environ:
            temp_dir = Path(os.environ["TMPDIR"])
        else:
            temp_dir = Path("/tmp")

        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    def _get_ffmpeg_exe(self) -> str:
        """Configured binary, else the one bundled with imageio-ffmpeg."""
        if self.ffmpeg_path:
            return self.ffmpeg_path
        return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg(ffmpeg_path: Optional[str] = None) -> bool:
    """Verify the encoder binary runs."""
    try:
        exe = ffmpeg_path or imageio_ffmpeg.get_ffmpeg_exe()
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (RuntimeError, subprocess.CalledProcessError, OSError):
        return False
