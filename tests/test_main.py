from __future__ import annotations

import json
from pathlib import Path

import pytest

from winiso_builder.main import build_parser, main


def test_build_arguments() -> None:
    args = build_parser().parse_args(["build", "--variant", "ltsc", "--jobs", "4", "--dry-run"])
    assert args.variant == "ltsc"
    assert args.jobs == 4
    assert args.dry_run
    assert not args.force


def test_unknown_variant_is_rejected() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["build", "--variant", "server"])


def test_discover_drivers_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    inf = tmp_path / "drivers" / "vmd" / "iaStorVD.inf"
    inf.parent.mkdir(parents=True)
    inf.write_text("[Version]\nClass=SCSIAdapter\nProvider=Intel\nDriverVer=01/01/2023,1.0\n", encoding="utf-8")

    rc = main(["--log", str(tmp_path / "cli.log"), "discover-drivers", str(tmp_path / "drivers"), "--json"])

    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert [d["class_name"] for d in out] == ["SCSIAdapter"]
    assert out[0]["provider"] == "Intel"


def test_errors_return_non_zero(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["--log", str(tmp_path / "cli.log"), "discover-drivers", str(tmp_path / "missing")])
    assert rc == 1
    assert "error:" in capsys.readouterr().err
