"""
Keep the host awake during long transfers.

Uses ``caffeinate`` on macOS and ``systemd-inhibit`` on Linux. Where neither
is available the context manager does nothing.
"""

import logging
import os
import shutil
import subprocess
import sys
from contextlib import contextmanager
from typing import Iterator, List, Optional

logger = logging.getLogger(__name__)


def inhibitor_command(reason: str, platform: str = sys.platform) -> Optional[List[str]]:
    """Return the command that holds a sleep inhibitor, or None."""
    if platform == "darwin" and shutil.which("caffeinate"):
        return ["caffeinate", "-i", "-w", str(os.getpid())]
    if platform.startswith("linux") and shutil.which("systemd-inhibit"):
        return [
            "systemd-inhibit",
            "--what=sleep:idle",
            "--who=xteink-flasher",
            f"--why={reason}",
            "sleep",
            "infinity",
        ]
    return None


@contextmanager
def keep_awake(reason: str = "Transferring flash") -> Iterator[None]:
    cmd = inhibitor_command(reason)
    if cmd is None:
        logger.debug("No sleep inhibitor available")
        yield
        return

    try:
        proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as e:
        logger.warning(f"Could not start {cmd[0]}: {e}. The host may sleep during transfer.")
        yield
        return

    logger.debug(f"Holding sleep inhibitor ({cmd[0]}, pid {proc.pid})")
    try:
        yield
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
