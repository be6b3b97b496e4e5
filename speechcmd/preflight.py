"""Startup checks for the ffmpeg binary and the Whisper model file."""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Tuple

from .config import WhisperConfig

logger = logging.getLogger(__name__)


class PreflightChecker:
    """Decides once whether speech recognition can run on this machine."""

    def __init__(self, config: WhisperConfig):
        self.config = config
        self._result: Optional[Tuple[bool, str]] = None

    @property
    def cached_result(self) -> Optional[Tuple[bool, str]]:
        return self._result

    def check_availability(self, refresh: bool = False) -> Tuple[bool, str]:
        """Run the checks in order and stop at the first failure.

        Args:
            refresh: Ignore a cached verdict and check again.

        Returns:
            Tuple of (available, reason).
        """
        if self._result is not None and not refresh:
            return self._result

        available, reason = self._check_binary()
        if available:
            available, reason = self._check_model()

        if available:
            logger.info("Speech recognition available")
        else:
            logger.warning(f"Speech recognition unavailable: {reason}")

        self._result = (available, reason)
        return self._result

    def _check_binary(self) -> Tuple[bool, str]:
        binary = self.config.binary
        timeout = self.config.version_timeout_s
        try:
            result = subprocess.run(
                [binary, "-version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError:
            return False, f"'{binary}' not found"
        except PermissionError:
            return False, f"Permission denied executing '{binary}'"
        except subprocess.TimeoutExpired:
            return False, f"'{binary} -version' did not finish within {timeout}s"
        except OSError as e:
            return False, f"Could not run '{binary}': {e}"

        if result.returncode != 0:
            return False, f"'{binary} -version' exited with code {result.returncode}"

        logger.debug(f"'{binary}' is installed")
        return True, "ok"

    def _check_model(self) -> Tuple[bool, str]:
        model_path = self.config.model_path
        if model_path.is_file():
            logger.debug(f"Whisper model found at {model_path}")
            return True, "ok"

        if self._copy_model_from_source(model_path) and model_path.is_file():
            return True, "ok"

        return False, f"Whisper model file not found: {model_path}"

    def _copy_model_from_source(self, model_path: Path) -> bool:
        source_dir = self.config.model_source_dir
        if source_dir is None:
            return False

        source = source_dir / self.config.model_file
        if not source.is_file():
            logger.debug(f"No model to copy at {source}")
            return False

        try:
            model_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, model_path)
        except OSError as e:
            logger.error(f"Failed to copy Whisper model from {source}: {e}")
            return False

        logger.info(f"Copied Whisper model from {source} to {model_path}")
        return True
