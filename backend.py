"""
Workspace backend for the agent core.

Two services: a stat() freshness oracle for the tool cache, and a
timeout-bounded shell runner for hooks. Hosts that work on remote
workspaces supply their own Backend subclass.
"""

import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

TIMEOUT_RETURN_CODE = -1


class Backend(ABC):
    """Where tool paths are resolved and hook commands run."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Absolute root that relative paths resolve against."""

    @abstractmethod
    def stat(self, path: str) -> Dict[str, Any]:
        """{mtime, size, is_dir} for a path; raises OSError when it does not exist."""

    @abstractmethod
    def run_command(self, command: str, cwd: str = ".", timeout: float = 30,
                    env: Optional[Dict[str, str]] = None) -> Tuple[str, str, int]:
        """Run through bash. Returns (stdout, stderr, returncode), returncode -1 on timeout."""

    def resolve_path(self, path: str) -> str:
        if not os.path.isabs(path):
            path = os.path.join(self.working_directory, path)
        return os.path.normpath(path)


class LocalBackend(Backend):
    """Local filesystem; commands run in their own process group."""

    def __init__(self, working_directory: str = "."):
        self._root = os.path.abspath(working_directory)

    @property
    def working_directory(self) -> str:
        return self._root

    def stat(self, path: str) -> Dict[str, Any]:
        full = self.resolve_path(path)
        st = os.stat(full)
        return {"mtime": st.st_mtime_ns, "size": st.st_size, "is_dir": os.path.isdir(full)}

    def run_command(self, command: str, cwd: str = ".", timeout: float = 30,
                    env: Optional[Dict[str, str]] = None) -> Tuple[str, str, int]:
        workdir = self._root if cwd == "." else self.resolve_path(cwd)
        proc = subprocess.Popen(
            ["bash", "-c", command],
            cwd=workdir,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        try:
            out, err = proc.communicate(timeout=timeout)
            return out or "", err or "", proc.returncode
        except subprocess.TimeoutExpired:
            logger.warning(f"Killing command after {timeout}s: {command[:120]}")
            _kill_group(proc)
            out, err = proc.communicate(timeout=5)
            return out or "", f"Command timed out after {timeout}s\n{err or ''}", TIMEOUT_RETURN_CODE


def _kill_group(proc: subprocess.Popen) -> None:
    """SIGKILL the process group, then the process itself."""
    for kill in (lambda: os.killpg(os.getpgid(proc.pid), signal.SIGKILL), proc.kill):
        try:
            kill()
        except OSError:
            pass
