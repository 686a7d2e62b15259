from __future__ import annotations

import subprocess

import pytest

from winiso_builder.lib import command
from winiso_builder.lib.command import CommandError, CommandTimeout, run_cmd


def test_dry_run_does_not_execute(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail(*_a, **_kw):
        raise AssertionError("subprocess.run called in dry-run")

    monkeypatch.setattr(command.subprocess, "run", fail)
    r = run_cmd(["dism", "/Get-WimInfo"], dry_run=True)
    assert r.returncode == 0
    assert r.argv == ["dism", "/Get-WimInfo"]


def test_failure_raises_with_result(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        command.subprocess,
        "run",
        lambda argv, **_kw: subprocess.CompletedProcess(argv, 87, stdout="", stderr="Error: 87"),
    )
    with pytest.raises(CommandError) as ei:
        run_cmd(["dism", "/bogus"])
    assert ei.value.result is not None
    assert ei.value.result.returncode == 87
    assert "Error: 87" in str(ei.value)

    r = run_cmd(["dism", "/bogus"], check=False)
    assert r.returncode == 87


def test_timeout_raises_command_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def slow(argv, **kw):
        raise subprocess.TimeoutExpired(argv, kw.get("timeout"))

    monkeypatch.setattr(command.subprocess, "run", slow)
    with pytest.raises(CommandTimeout):
        run_cmd(["reg", "add", "HKLM\\zX"], timeout_s=1)
