from __future__ import annotations

import pytest

from winiso_builder.lib import registry
from winiso_builder.lib.command import CmdResult, CommandError
from winiso_builder.lib.registry import RegistryWrite, load_hives, unload_hives


def test_to_argv_named_value() -> None:
    w = RegistryWrite(path=r"HKLM\zSYSTEM\Setup\LabConfig", name="BypassTPMCheck", type="reg_dword", value=1)
    assert w.type == "REG_DWORD"
    assert w.to_argv("reg") == [
        "reg", "add", r"HKLM\zSYSTEM\Setup\LabConfig", "/v", "BypassTPMCheck", "/t", "REG_DWORD", "/d", "1", "/f",
    ]


def test_to_argv_default_value_and_reg_none() -> None:
    assert RegistryWrite(path=r"HKLM\zSOFTWARE\X", name=None, value="hi").to_argv() == [
        "reg", "add", r"HKLM\zSOFTWARE\X", "/ve", "/t", "REG_SZ", "/d", "hi", "/f",
    ]
    assert "/d" not in RegistryWrite(path=r"HKLM\zSOFTWARE\X", name="n", type="REG_NONE").to_argv()


def test_validation() -> None:
    with pytest.raises(ValueError):
        RegistryWrite(path="", name="x")
    with pytest.raises(ValueError):
        RegistryWrite(path=r"HKLM\zSOFTWARE\X", name="x", type="REG_LINK")
    with pytest.raises(ValueError):
        RegistryWrite(path=r"HKLM\zSOFTWARE\X", name="x", type="REG_DWORD", value=True)
    assert RegistryWrite(path=r"HKLM\zSOFTWARE\X", name="x", type="REG_DWORD", value="0x10").value == "0x10"


def test_load_hives_unloads_on_partial_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def fake_run_cmd(argv, *, check=True, dry_run=False, **_kw):
        calls.append(list(argv))
        if argv[1] == "load" and argv[2] == r"HKLM\zSYSTEM":
            raise CommandError("load failed")
        return CmdResult(argv=list(argv), returncode=0, stdout="", stderr="")

    monkeypatch.setattr(registry, "run_cmd", fake_run_cmd)
    with pytest.raises(CommandError):
        load_hives(r"C:\mount", hives=["zSOFTWARE", "zNTUSER", "zSYSTEM"])

    assert [c[1:3] for c in calls] == [
        ["load", r"HKLM\zSOFTWARE"],
        ["load", r"HKLM\zNTUSER"],
        ["load", r"HKLM\zSYSTEM"],
        ["unload", r"HKLM\zNTUSER"],
        ["unload", r"HKLM\zSOFTWARE"],
    ]


def test_load_hives_rejects_unknown_hive() -> None:
    with pytest.raises(ValueError):
        load_hives(r"C:\mount", hives=["zBOGUS"], dry_run=True)


def test_unload_failures_are_logged_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run_cmd(argv, *, check=True, dry_run=False, **_kw):
        assert check is False
        return CmdResult(argv=list(argv), returncode=1, stdout="", stderr="in use")

    monkeypatch.setattr(registry, "run_cmd", fake_run_cmd)
    unload_hives(["zSOFTWARE", "zSYSTEM"])
