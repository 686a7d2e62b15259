from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


class CommandError(RuntimeError):
    def __init__(self, message: str, result: CmdResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class CommandTimeout(CommandError):
    pass


def fmt_argv(argv: Sequence[str]) -> str:
    # Windows tools take their own quoting; render with double quotes only where needed.
    return subprocess.list2cmdline(list(argv))


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    dry_run: bool = False,
    timeout_s: float | None = None,
) -> CmdResult:
    """Run an external tool with consistent logging.

    - Always logs the command.
    - dry_run logs but does not execute.
    - timeout_s kills the process and raises CommandTimeout.
    """

    argv_list = [str(a) for a in argv]
    logger.info("CMD %s", fmt_argv(argv_list))

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0, stdout="", stderr="")

    try:
        p = subprocess.run(
            argv_list,
            input=input_text,
            text=True,
            encoding="utf-8",
            errors="replace",
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandTimeout(f"Command timed out after {timeout_s}s: {fmt_argv(argv_list)}") from e

    if p.stdout:
        logger.debug("STDOUT %s", p.stdout.strip())
    if p.stderr:
        logger.debug("STDERR %s", p.stderr.strip())

    result = CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
    if check and p.returncode != 0:
        detail = (p.stderr or p.stdout or "").strip()
        raise CommandError(f"Command failed ({p.returncode}): {fmt_argv(argv_list)}\n{detail}", result)

    return result
