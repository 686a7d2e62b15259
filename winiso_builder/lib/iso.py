from __future__ import annotations

import logging
import re
from pathlib import Path

from .command import run_cmd

logger = logging.getLogger(__name__)

BIOS_BOOT_FILE = "boot/etfsboot.com"
EFI_BOOT_FILE = "efi/microsoft/boot/efisys.bin"

_LABEL_RE = re.compile(r"[^A-Za-z0-9_]")


def _win(p: Path) -> str:
    return str(p).replace("/", "\\")


def boot_data(iso_dir: str) -> str:
    """oscdimg -bootdata argument for the media layout under iso_dir.

    BIOS (El Torito, platform 0) + UEFI (platform EF) when etfsboot.com is
    present, UEFI only otherwise (arm64 media ships no BIOS loader).
    """

    root = Path(iso_dir)
    efi = root / EFI_BOOT_FILE
    bios = root / BIOS_BOOT_FILE
    if bios.exists():
        return f"2#p0,e,b{_win(bios)}#pEF,e,b{_win(efi)}"
    return f"1#pEF,e,b{_win(efi)}"


def volume_label(label: str) -> str:
    # oscdimg rejects spaces; ISO9660 labels are limited to 32 chars.
    cleaned = _LABEL_RE.sub("_", label.strip())[:32]
    return cleaned or "WINISO"


def make_iso(
    iso_dir: str,
    out_path: str,
    *,
    label: str | None = None,
    oscdimg_exe: str = "oscdimg",
    dry_run: bool = False,
) -> None:
    """Author a bootable UDF ISO from an extracted media tree."""

    src = Path(iso_dir)
    if not dry_run and not (src / EFI_BOOT_FILE).exists():
        raise RuntimeError(f"Missing UEFI boot image: {src / EFI_BOOT_FILE}")

    out = Path(out_path)
    if not dry_run:
        out.parent.mkdir(parents=True, exist_ok=True)
        if out.exists():
            out.unlink()

    argv = [oscdimg_exe, "-m", "-o", "-u2", "-udfver102", f"-bootdata:{boot_data(iso_dir)}"]
    if label:
        argv.append(f"-l{volume_label(label)}")
    argv += [str(src), str(out)]
    run_cmd(argv, dry_run=dry_run)


def mount_iso(iso_path: str, *, powershell_exe: str = "powershell", dry_run: bool = False) -> str:
    """Mount an ISO file and return its drive root (e.g. 'E:\\')."""

    script = (
        f"$img = Mount-DiskImage -ImagePath '{iso_path}' -PassThru; "
        "($img | Get-Volume).DriveLetter"
    )
    r = run_cmd([powershell_exe, "-NoProfile", "-NonInteractive", "-Command", script], dry_run=dry_run)
    if dry_run:
        return "X:\\"
    lines = (r.stdout or "").strip().splitlines()
    letter = lines[-1].strip() if lines else ""
    if not re.fullmatch(r"[A-Za-z]", letter):
        raise RuntimeError(f"Unable to determine drive letter for mounted ISO {iso_path}: {r.stdout!r}")
    return f"{letter.upper()}:\\"


def dismount_iso(iso_path: str, *, powershell_exe: str = "powershell", dry_run: bool = False) -> None:
    r = run_cmd(
        [powershell_exe, "-NoProfile", "-NonInteractive", "-Command", f"Dismount-DiskImage -ImagePath '{iso_path}'"],
        check=False,
        dry_run=dry_run,
    )
    if r.returncode != 0:
        logger.warning("Failed to dismount %s (rc=%s)", iso_path, r.returncode)
