from __future__ import annotations

import pytest

from winiso_builder.lib import dism
from winiso_builder.lib.command import CmdResult
from winiso_builder.lib.dism import parse_image_details, parse_packages, parse_provisioned_appx, parse_wim_info

WIM_INFO = """
Deployment Image Servicing and Management tool
Version: 10.0.22621.1

Details for image : C:\\build\\media\\sources\\install.wim

Index : 1
Name : Windows 11 Home
Description : Windows 11 Home
Size : 18,420,290,367 bytes

Index : 6
Name : Windows 11 Pro
Description : Windows 11 Pro
Size : 18,708,839,181 bytes

The operation completed successfully.
"""

IMAGE_DETAILS = """
Details for image : C:\\build\\media\\sources\\install.wim

Index : 6
Name : Windows 11 Pro
Description : Windows 11 Pro
Size : 18,708,839,181 bytes
WIM Bootable : No
Architecture : x64
Hal : <undefined>
Version : 10.0.22631
ServicePack Build : 2861
Edition : Professional
Installation : Client
Created : 11/29/2023 - 10:05:22 PM
Languages :
        en-US (Default)
        de-DE

The operation completed successfully.
"""

APPX = """
Listing provisioned app packages...

DisplayName : Clipchamp.Clipchamp
Version : 2.2.8.0
Architecture : neutral
ResourceId : ~
PackageName : Clipchamp.Clipchamp_2.2.8.0_neutral_~_yxz26nhyzhsrt
Regions :

DisplayName : Microsoft.BingNews
Version : 4.2.27001.0
Architecture : neutral
ResourceId : ~
PackageName : Microsoft.BingNews_4.2.27001.0_neutral_~_8wekyb3d8bbwe
Regions :

The operation completed successfully.
"""

PACKAGES = """
Packages listing:

Package Identity : Microsoft-Windows-InternetExplorer-Optional-Package~31bf3856ad364e35~amd64~~11.0.22621.1
State : Installed
Release Type : OnDemand Pack
Install Time : 5/7/2022 7:44 AM

Package Identity : Microsoft-Windows-MediaPlayer-Package~31bf3856ad364e35~amd64~~10.0.22621.1
State : Installed
Release Type : OnDemand Pack
Install Time : 5/7/2022 7:44 AM

The operation completed successfully.
"""


def test_parse_wim_info() -> None:
    images = parse_wim_info(WIM_INFO)
    assert [(i.index, i.name) for i in images] == [(1, "Windows 11 Home"), (6, "Windows 11 Pro")]
    assert images[1].size_bytes == 18708839181


def test_parse_image_details() -> None:
    info = parse_image_details(IMAGE_DETAILS)
    assert info is not None
    assert info.index == 6
    assert info.architecture == "x64"
    assert info.edition == "Professional"
    assert info.version == "10.0.22631"
    assert info.languages == ("en-US", "de-DE")


def test_parse_image_details_empty() -> None:
    assert parse_image_details("") is None


def test_parse_provisioned_appx() -> None:
    pkgs = parse_provisioned_appx(APPX)
    assert [p.display_name for p in pkgs] == ["Clipchamp.Clipchamp", "Microsoft.BingNews"]
    assert pkgs[1].package_name == "Microsoft.BingNews_4.2.27001.0_neutral_~_8wekyb3d8bbwe"
    assert pkgs[0].version == "2.2.8.0"


def test_parse_packages() -> None:
    assert parse_packages(PACKAGES) == [
        "Microsoft-Windows-InternetExplorer-Optional-Package~31bf3856ad364e35~amd64~~11.0.22621.1",
        "Microsoft-Windows-MediaPlayer-Package~31bf3856ad364e35~amd64~~10.0.22621.1",
    ]


def test_get_images_runs_dism_in_english(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def fake_run_cmd(argv, *, check=True, dry_run=False, **_kw):
        calls.append(list(argv))
        return CmdResult(argv=list(argv), returncode=0, stdout=WIM_INFO, stderr="")

    monkeypatch.setattr(dism, "run_cmd", fake_run_cmd)
    images = dism.get_images(r"C:\media\sources\install.wim", dism_exe="dism.exe")

    assert len(images) == 2
    assert calls == [["dism.exe", "/English", "/Get-WimInfo", r"/WimFile:C:\media\sources\install.wim"]]


def test_export_image_validates_compression() -> None:
    with pytest.raises(ValueError):
        dism.export_image("a.wim", 1, "b.wim", compression="lzx", dry_run=True)


def test_discard_unmount_never_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = {}

    def fake_run_cmd(argv, *, check=True, dry_run=False, **_kw):
        seen["check"] = check
        seen["argv"] = list(argv)
        return CmdResult(argv=list(argv), returncode=5, stdout="", stderr="busy")

    monkeypatch.setattr(dism, "run_cmd", fake_run_cmd)
    r = dism.unmount_image(r"C:\mount", commit=False)

    assert r.returncode == 5
    assert seen["check"] is False
    assert "/Discard" in seen["argv"]
