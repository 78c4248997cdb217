"""External command seam used by the probe, restart and resource checks."""
from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

DEFAULT_TIMEOUT = 30


class CommandUnavailable(RuntimeError):
    """Raised when a command cannot be started or runs past its timeout."""


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout.strip() + "\n" + self.stderr.strip()).strip()


class CommandRunner:
    """Run a command to completion and capture its text output.

    Non-zero exit codes are returned, not raised: several tools (``systemctl
    is-active``, ``smartctl``) report state through them.
    """

    def __init__(self, timeout: int = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout

    def available(self, name: str) -> bool:
        return shutil.which(name) is not None

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        argv = [str(item) for item in args]
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        try:
            proc = subprocess.run(
                argv,
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout or self.timeout,
                env=merged_env,
            )
        except FileNotFoundError as exc:
            raise CommandUnavailable(f"{argv[0]}: command not found") from exc
        except PermissionError as exc:
            raise CommandUnavailable(f"{argv[0]}: permission denied") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandUnavailable(f"{argv[0]}: timed out after {exc.timeout}s") from exc
        return CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")
