from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

COMPRESSION_TYPES = {"none", "fast", "max", "recovery"}

# "Key : Value" as printed by DISM with /English.
_KV_RE = re.compile(r"^\s*([^:]+?)\s+:\s*(.*)$")


@dataclass(frozen=True)
class ImageInfo:
    index: int
    name: str
    description: str = ""
    size_bytes: Optional[int] = None
    architecture: Optional[str] = None
    edition: Optional[str] = None
    version: Optional[str] = None
    languages: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProvisionedAppx:
    display_name: str
    package_name: str
    version: str = ""


def parse_records(text: str, start_key: str) -> List[Dict[str, str]]:
    """Split DISM listing output into records, each starting at `start_key`.

    Indented lines without a key are appended to the previous key's value
    (DISM prints multi-value fields such as Languages this way).
    """

    records: List[Dict[str, str]] = []
    cur: Optional[Dict[str, str]] = None
    last_key: Optional[str] = None

    for line in (text or "").splitlines():
        if not line.strip():
            continue
        m = _KV_RE.match(line)
        if m:
            key, value = m.group(1).strip(), m.group(2).strip()
            if key == start_key:
                cur = {}
                records.append(cur)
            if cur is not None:
                cur[key] = value
                last_key = key
            continue
        if cur is not None and last_key and line[:1].isspace():
            prev = cur.get(last_key, "")
            cur[last_key] = f"{prev}\n{line.strip()}" if prev else line.strip()

    return records


def _parse_size(v: str | None) -> Optional[int]:
    if not v:
        return None
    digits = re.sub(r"[^0-9]", "", v)
    return int(digits) if digits else None


def _parse_languages(v: str | None) -> Tuple[str, ...]:
    if not v:
        return ()
    out = []
    for ln in v.splitlines():
        tag = ln.replace("(Default)", "").strip()
        if tag:
            out.append(tag)
    return tuple(out)


def parse_wim_info(text: str) -> List[ImageInfo]:
    images: List[ImageInfo] = []
    for rec in parse_records(text, "Index"):
        try:
            index = int(rec["Index"])
        except (KeyError, ValueError):
            logger.debug("Skipping unparsable image record: %s", rec)
            continue
        images.append(
            ImageInfo(
                index=index,
                name=rec.get("Name", ""),
                description=rec.get("Description", ""),
                size_bytes=_parse_size(rec.get("Size")),
                architecture=rec.get("Architecture") or None,
                edition=rec.get("Edition") or None,
                version=rec.get("Version") or None,
                languages=_parse_languages(rec.get("Languages")),
            )
        )
    return images


def parse_image_details(text: str) -> Optional[ImageInfo]:
    images = parse_wim_info(text)
    return images[0] if images else None


def parse_provisioned_appx(text: str) -> List[ProvisionedAppx]:
    return [
        ProvisionedAppx(
            display_name=rec.get("DisplayName", ""),
            package_name=rec.get("PackageName", ""),
            version=rec.get("Version", ""),
        )
        for rec in parse_records(text, "DisplayName")
        if rec.get("PackageName")
    ]


def parse_packages(text: str) -> List[str]:
    return [rec["Package Identity"] for rec in parse_records(text, "Package Identity") if rec.get("Package Identity")]


def _dism(dism_exe: str, args: Sequence[str], *, check: bool = True, dry_run: bool = False) -> CmdResult:
    return run_cmd([dism_exe, "/English", *args], check=check, dry_run=dry_run)


def get_images(wim: str, *, dism_exe: str = "dism", dry_run: bool = False) -> List[ImageInfo]:
    r = _dism(dism_exe, ["/Get-WimInfo", f"/WimFile:{wim}"], dry_run=dry_run)
    return parse_wim_info(r.stdout)


def get_image_details(wim: str, index: int, *, dism_exe: str = "dism", dry_run: bool = False) -> Optional[ImageInfo]:
    r = _dism(dism_exe, ["/Get-WimInfo", f"/WimFile:{wim}", f"/Index:{index}"], dry_run=dry_run)
    return parse_image_details(r.stdout)


def mount_image(
    wim: str,
    index: int,
    mount_dir: str,
    *,
    read_only: bool = False,
    dism_exe: str = "dism",
    dry_run: bool = False,
) -> None:
    if not dry_run:
        Path(mount_dir).mkdir(parents=True, exist_ok=True)
    args = ["/Mount-Image", f"/ImageFile:{wim}", f"/Index:{index}", f"/MountDir:{mount_dir}"]
    if read_only:
        args.append("/ReadOnly")
    _dism(dism_exe, args, dry_run=dry_run)


def unmount_image(mount_dir: str, *, commit: bool, dism_exe: str = "dism", dry_run: bool = False) -> CmdResult:
    """Unmount an image. Discarding is best-effort and never raises."""

    args = ["/Unmount-Image", f"/MountDir:{mount_dir}", "/Commit" if commit else "/Discard"]
    r = _dism(dism_exe, args, check=commit, dry_run=dry_run)
    if r.returncode != 0:
        logger.warning("Discarding %s failed (rc=%s)", mount_dir, r.returncode)
    return r


def cleanup_mountpoints(*, dism_exe: str = "dism", dry_run: bool = False) -> None:
    _dism(dism_exe, ["/Cleanup-Mountpoints"], check=False, dry_run=dry_run)


def list_provisioned_appx(mount_dir: str, *, dism_exe: str = "dism", dry_run: bool = False) -> List[ProvisionedAppx]:
    r = _dism(dism_exe, [f"/Image:{mount_dir}", "/Get-ProvisionedAppxPackages"], dry_run=dry_run)
    return parse_provisioned_appx(r.stdout)


def remove_provisioned_appx(
    mount_dir: str, package_name: str, *, dism_exe: str = "dism", dry_run: bool = False
) -> CmdResult:
    return _dism(
        dism_exe,
        [f"/Image:{mount_dir}", "/Remove-ProvisionedAppxPackage", f"/PackageName:{package_name}"],
        check=False,
        dry_run=dry_run,
    )


def list_packages(mount_dir: str, *, dism_exe: str = "dism", dry_run: bool = False) -> List[str]:
    r = _dism(dism_exe, [f"/Image:{mount_dir}", "/Get-Packages"], dry_run=dry_run)
    return parse_packages(r.stdout)


def remove_package(mount_dir: str, package_id: str, *, dism_exe: str = "dism", dry_run: bool = False) -> CmdResult:
    return _dism(
        dism_exe,
        [f"/Image:{mount_dir}", "/Remove-Package", f"/PackageName:{package_id}"],
        check=False,
        dry_run=dry_run,
    )


def add_driver(
    mount_dir: str,
    driver_path: str,
    *,
    recurse: bool = True,
    dism_exe: str = "dism",
    dry_run: bool = False,
) -> None:
    args = [f"/Image:{mount_dir}", "/Add-Driver", f"/Driver:{driver_path}"]
    if recurse:
        args.append("/Recurse")
    _dism(dism_exe, args, dry_run=dry_run)


def add_provisioned_appx(
    mount_dir: str,
    package_path: str,
    *,
    license_path: str | None = None,
    dependency_paths: Sequence[str] = (),
    region: str | None = None,
    dism_exe: str = "dism",
    dry_run: bool = False,
) -> None:
    args = [f"/Image:{mount_dir}", "/Add-ProvisionedAppxPackage", f"/PackagePath:{package_path}"]
    for dep in dependency_paths:
        args.append(f"/DependencyPackagePath:{dep}")
    args.append(f"/LicensePath:{license_path}" if license_path else "/SkipLicense")
    if region:
        args.append(f"/Region:{region}")
    _dism(dism_exe, args, dry_run=dry_run)


def cleanup_image(mount_dir: str, *, reset_base: bool = True, dism_exe: str = "dism", dry_run: bool = False) -> None:
    args = [f"/Image:{mount_dir}", "/Cleanup-Image", "/StartComponentCleanup"]
    if reset_base:
        args.append("/ResetBase")
    _dism(dism_exe, args, dry_run=dry_run)


def export_image(
    source: str,
    index: int,
    destination: str,
    *,
    compression: str = "max",
    dism_exe: str = "dism",
    dry_run: bool = False,
) -> None:
    if compression not in COMPRESSION_TYPES:
        raise ValueError(f"Unsupported compression {compression!r} (expected one of {sorted(COMPRESSION_TYPES)})")
    _dism(
        dism_exe,
        [
            "/Export-Image",
            f"/SourceImageFile:{source}",
            f"/SourceIndex:{index}",
            f"/DestinationImageFile:{destination}",
            f"/Compress:{compression}",
            "/CheckIntegrity",
        ],
        dry_run=dry_run,
    )


def export_online_drivers(destination: str, *, dism_exe: str = "dism", dry_run: bool = False) -> None:
    if not dry_run:
        Path(destination).mkdir(parents=True, exist_ok=True)
    _dism(dism_exe, ["/Online", "/Export-Driver", f"/Destination:{destination}"], dry_run=dry_run)
