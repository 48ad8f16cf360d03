"""Subprocess access for the media tools the video and transcription paths need.

Only binaries named in the allowlist may run, never through a shell, and
always with captured text output so callers can read stdout/stderr.
"""
import logging
import re
import shutil
import subprocess
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from services import metrics

logger = logging.getLogger(__name__)

MEDIA_TOOLS = frozenset({"ffmpeg", "tesseract", "whisper-cli"})
DEFAULT_TIMEOUT_SECONDS = 300.0

_KEY_VALUE_SECRET = re.compile(r"(?i)\b(token|api[_-]?key|password|secret|authorization)([=:])\S+")
_BEARER_SECRET = re.compile(r"(?i)\bBearer\s+\S+")


class ToolNotAllowedError(ValueError):
    pass


class ToolUnavailableError(FileNotFoundError):
    pass


def redact_args(args: Sequence[str]) -> List[str]:
    redacted = []
    for arg in args:
        value = _KEY_VALUE_SECRET.sub(r"\1\2[REDACTED]", str(arg))
        redacted.append(_BEARER_SECRET.sub("Bearer [REDACTED]", value))
    return redacted


class CommandRunner:
    def __init__(
        self,
        allowed_tools: Optional[Iterable[str]] = None,
        *,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.allowed_tools = frozenset(allowed_tools) if allowed_tools is not None else MEDIA_TOOLS
        self.default_timeout = default_timeout

    def is_allowed(self, command: str) -> bool:
        return Path(str(command)).name in self.allowed_tools

    def is_available(self, command: str) -> bool:
        return self.is_allowed(command) and shutil.which(command) is not None

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """Run ``args`` and return the completed process with text stdout/stderr.

        Raises ``ToolNotAllowedError`` for tools outside the allowlist,
        ``ToolUnavailableError`` when a bare tool name is not on PATH, and
        ``subprocess.CalledProcessError`` on a non-zero exit when ``check``.
        """
        argv = [str(part) for part in args]
        if not argv:
            raise ToolNotAllowedError("No command given")
        tool = Path(argv[0]).name
        if not self.is_allowed(tool):
            raise ToolNotAllowedError(f"{tool} is not an allowed media tool")
        if tool == argv[0] and shutil.which(tool) is None:
            raise ToolUnavailableError(f"{tool} is not installed or not on PATH")

        logger.debug("Running %s", " ".join(redact_args(argv)))
        started = time.perf_counter()
        returncode = None
        try:
            completed = subprocess.run(
                argv,
                shell=False,
                capture_output=True,
                text=True,
                timeout=timeout or self.default_timeout,
                cwd=cwd,
                check=False,
            )
            returncode = completed.returncode
        finally:
            metrics.record_tool_run(tool, (time.perf_counter() - started) * 1000, returncode == 0)

        if returncode != 0:
            logger.debug("%s exited %s: %s", tool, returncode, (completed.stderr or "").strip()[-300:])
            if check:
                raise subprocess.CalledProcessError(
                    returncode, argv, output=completed.stdout, stderr=completed.stderr
                )
        return completed
