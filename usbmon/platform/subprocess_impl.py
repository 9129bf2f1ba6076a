"""SubprocessSystemAdapter — real implementation of ISystemAdapter."""

from __future__ import annotations

import logging
import subprocess

from usbmon.platform.system_adapter import CommandResult, ISystemAdapter

logger = logging.getLogger(__name__)


class SubprocessSystemAdapter(ISystemAdapter):
    """Executes real subprocess calls.  Never raises: failures map to returncode -1."""

    def __init__(self, debug: bool = False) -> None:
        self.debug = debug

    def run_command(self, args: list[str], timeout: float = 1.0) -> CommandResult:
        if self.debug:
            logger.debug("run_command: %s", " ".join(args))
        try:
            r = subprocess.run(args, capture_output=True, text=True, timeout=timeout)
            return CommandResult(stdout=r.stdout, stderr=r.stderr, returncode=r.returncode)
        except subprocess.TimeoutExpired:
            return CommandResult(stdout="", stderr="timeout", returncode=-1)
        except OSError as e:
            return CommandResult(stdout="", stderr=str(e), returncode=-1)
