from __future__ import annotations

import codecs
from pathlib import Path

from winiso_builder.lib.drivers import discover_drivers, parse_inf_version, read_inf_text, stage_drivers

VMD_INF = """; Intel RST VMD controller
[Version]
Signature   = "$WINDOWS NT$"
Class       = SCSIAdapter
ClassGUID   = {4D36E97B-E325-11CE-BFC1-08002BE10318}
Provider    = %INTEL%          ; vendor
DriverVer   = 07/12/2023,19.5.1.1040
CatalogFile = iaStorVD.cat

[Strings]
INTEL = "Intel Corporation"
"""

NET_INF = """[Version]
Signature = "$WINDOWS NT$"
Class     = Net
ClassGuid = {4d36e972-e325-11ce-bfc1-08002be10318}
Provider  = Realtek
DriverVer = 01/01/2022,10.1.0.0
"""

AHCI_BY_GUID_INF = """[version]
signature = "$Windows NT$"
classguid = {4d36e96a-e325-11ce-bfc1-08002be10318}
provider  = "Acme; Storage"
"""


def _write(root: Path, rel: str, text: str, *, utf16: bool = False) -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    if utf16:
        p.write_bytes(codecs.BOM_UTF16_LE + text.encode("utf-16-le"))
    else:
        p.write_text(text, encoding="cp1252")
    return p


def test_parse_inf_version_resolves_strings() -> None:
    v = parse_inf_version(VMD_INF)
    assert v["class"] == "SCSIAdapter"
    assert v["provider"] == "Intel Corporation"
    assert v["driverver"] == "07/12/2023,19.5.1.1040"
    assert v["signature"] == "$WINDOWS NT$"


def test_quoted_semicolon_is_not_a_comment() -> None:
    assert parse_inf_version(AHCI_BY_GUID_INF)["provider"] == "Acme; Storage"


def test_read_inf_text_utf16(tmp_path: Path) -> None:
    p = _write(tmp_path, "x.inf", VMD_INF, utf16=True)
    assert "SCSIAdapter" in read_inf_text(p)


def test_discover_storage_drivers(tmp_path: Path) -> None:
    _write(tmp_path, "vmd/iaStorVD.inf", VMD_INF, utf16=True)
    _write(tmp_path, "net/rt640x64.INF", NET_INF)
    _write(tmp_path, "ahci/acme.inf", AHCI_BY_GUID_INF)

    storage = discover_drivers(str(tmp_path))
    assert sorted(Path(p.inf_path).parent.name for p in storage) == ["ahci", "vmd"]
    vmd = next(p for p in storage if "vmd" in p.inf_path)
    assert vmd.is_storage()
    assert vmd.class_guid == "{4d36e97b-e325-11ce-bfc1-08002be10318}"

    everything = discover_drivers(str(tmp_path), storage_only=False)
    assert len(everything) == 3


def test_stage_drivers_copies_package_dirs_with_unique_names(tmp_path: Path) -> None:
    src = tmp_path / "src"
    _write(src, "a/pkg/one.inf", VMD_INF)
    _write(src, "a/pkg/one.sys", "bin")
    _write(src, "b/pkg/two.inf", AHCI_BY_GUID_INF)

    staged = stage_drivers(discover_drivers(str(src)), str(tmp_path / "staged"))

    assert [Path(s).name for s in staged] == ["pkg", "pkg_2"]
    assert (tmp_path / "staged" / "pkg" / "one.sys").exists()
    assert (tmp_path / "staged" / "pkg_2" / "two.inf").exists()
