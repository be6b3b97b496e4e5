"""Launches and supervises the ffmpeg/whisper recognition process."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config import AppConfig

logger = logging.getLogger(__name__)

# Generous line limit; ffmpeg stderr banners can be long
STREAM_LIMIT = 1024 * 1024

# How long to wait after SIGTERM before SIGKILL
TERMINATE_TIMEOUT_S = 1.0

LineCallback = Callable[[str], None]


def _escape_filter_value(value: str) -> str:
    """Escape a value for use inside an ffmpeg filter option list."""
    return value.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def build_command(config: AppConfig, input_argument: str) -> List[str]:
    """Build the ffmpeg command line for raw PCM input and JSON whisper output.

    Args:
        config: Application configuration.
        input_argument: Value for ``-i`` (``pipe:0`` or a FIFO path).
    """
    whisper = config.whisper
    model = _escape_filter_value(str(whisper.model_path))
    whisper_filter = (
        f"whisper=model={model}"
        f":language={whisper.language}"
        f":queue={whisper.queue_seconds}"
        ":destination=-"
        ":format=json"
    )
    command = [whisper.binary, "-hide_banner"]
    if input_argument != "pipe:0":
        # Input comes from a FIFO; keep ffmpeg from reading keys on stdin
        command.append("-nostdin")
    return command + [
        "-f",
        "s16le",
        "-ar",
        str(config.audio.sample_rate),
        "-ac",
        str(config.audio.channels),
        "-i",
        input_argument,
        "-vn",
        "-af",
        whisper_filter,
        "-f",
        "null",
        "-",
    ]


@dataclass
class ProcessHandle:
    """A single launched recognizer process. Never reused after exit."""

    pid: int
    process: asyncio.subprocess.Process
    running: bool = True
    returncode: Optional[int] = None
    tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self.process.stdin

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self.process.stderr


class ProcessSupervisor:
    """Owns the lifetime of at most one recognizer process."""

    def __init__(
        self,
        config: AppConfig,
        on_stdout_line: LineCallback,
        on_stderr_line: Optional[LineCallback] = None,
    ):
        """Initialize the supervisor.

        Args:
            config: Application configuration.
            on_stdout_line: Called with every non-empty stdout line.
            on_stderr_line: Called with every non-empty stderr line. Defaults
                to debug logging.
        """
        self.config = config
        self.on_stdout_line = on_stdout_line
        self.on_stderr_line = on_stderr_line or self._log_stderr_line
        self._handle: Optional[ProcessHandle] = None

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    @property
    def is_alive(self) -> bool:
        handle = self._handle
        return (
            handle is not None
            and handle.running
            and handle.process.returncode is None
        )

    @staticmethod
    def _log_stderr_line(line: str) -> None:
        logger.debug(f"ffmpeg: {line}")

    async def start(self, input_argument: str) -> ProcessHandle:
        """Launch the recognizer process and wire its output streams.

        Args:
            input_argument: Value for ffmpeg's ``-i`` option.

        Returns:
            The live process handle.

        Raises:
            FileNotFoundError: If the binary does not exist.
            PermissionError: If the binary cannot be executed.
        """
        if self.is_alive:
            logger.warning("Recognizer process already running")
            return self._handle

        command = build_command(self.config, input_argument)
        logger.info(f"Launching recognizer: {' '.join(command)}")

        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
        handle = ProcessHandle(pid=process.pid, process=process)
        handle.tasks = [
            asyncio.create_task(self._pump(process.stdout, self.on_stdout_line, "stdout")),
            asyncio.create_task(self._pump(process.stderr, self.on_stderr_line, "stderr")),
            asyncio.create_task(self._watch_exit(handle)),
        ]
        self._handle = handle
        logger.info(f"Started recognizer process with PID: {process.pid}")
        return handle

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        callback: LineCallback,
        name: str,
    ) -> None:
        """Read lines from one output stream and hand them to callback."""
        if stream is None:
            return
        try:
            while True:
                try:
                    data = await stream.readline()
                except ValueError as e:
                    # Over-long line; readline has already discarded it
                    logger.warning(f"Skipped oversized recognizer {name} line: {e}")
                    continue
                if not data:
                    logger.debug(f"Recognizer {name} reached EOF")
                    break
                line = data.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    continue
                try:
                    callback(line)
                except Exception:
                    logger.exception(f"Error in {name} line callback")
        except asyncio.CancelledError:
            logger.debug(f"Recognizer {name} reader cancelled")
        except Exception as e:
            logger.error(f"Error reading recognizer {name}: {e}")

    async def _watch_exit(self, handle: ProcessHandle) -> None:
        try:
            returncode = await handle.process.wait()
        except asyncio.CancelledError:
            return
        handle.running = False
        handle.returncode = returncode
        logger.info(f"Recognizer process {handle.pid} exited with code {returncode}")

    async def stop(self, grace_period: float) -> List[str]:
        """Shut the process down: close stdin, wait, terminate, kill.

        Each step is attempted even if an earlier one failed. Never raises.

        Args:
            grace_period: Seconds to wait for a natural exit after stdin closes.

        Returns:
            Descriptions of the steps that failed.
        """
        handle, self._handle = self._handle, None
        if handle is None:
            return []

        errors: List[str] = []
        process = handle.process

        try:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
        except Exception as e:
            errors.append(f"closing stdin: {e}")

        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_period)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Recognizer did not exit within {grace_period}s, terminating"
                )
            except Exception as e:
                errors.append(f"waiting for exit: {e}")

        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for recognizer to terminate, killing")
            except ProcessLookupError:
                pass
            except Exception as e:
                errors.append(f"terminating: {e}")

        if process.returncode is None:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            except Exception as e:
                errors.append(f"killing: {e}")

        for task in handle.tasks:
            if not task.done():
                task.cancel()
        for task in handle.tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                errors.append(f"reader task: {e}")

        handle.running = False
        handle.returncode = process.returncode

        for error in errors:
            logger.error(f"Recognizer shutdown step failed: {error}")
        logger.info("Recognizer process stopped")
        return errors
