from __future__ import annotations

import codecs
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from .assets import copy_tree
from .dism import export_online_drivers

logger = logging.getLogger(__name__)

# Storage controllers: SCSIAdapter (RAID/VMD/NVMe) and HDC (IDE/ATA/AHCI).
STORAGE_CLASSES: Set[str] = {"scsiadapter", "hdc"}
STORAGE_CLASS_GUIDS: Set[str] = {
    "{4d36e97b-e325-11ce-bfc1-08002be10318}",
    "{4d36e96a-e325-11ce-bfc1-08002be10318}",
}

_SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")
_ENTRY_RE = re.compile(r"^\s*([^=;]+?)\s*=\s*(.*?)\s*$")
_TOKEN_RE = re.compile(r"%([^%]+)%")


@dataclass(frozen=True)
class DriverPackage:
    inf_path: str
    class_name: str = ""
    class_guid: str = ""
    provider: str = ""
    version: str = ""

    @property
    def package_dir(self) -> str:
        return str(Path(self.inf_path).parent)

    def is_storage(self) -> bool:
        return self.class_name.lower() in STORAGE_CLASSES or self.class_guid.lower() in STORAGE_CLASS_GUIDS

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def read_inf_text(path: Path) -> str:
    data = path.read_bytes()
    if data.startswith(codecs.BOM_UTF16_LE) or data.startswith(codecs.BOM_UTF16_BE):
        return data.decode("utf-16", errors="replace")
    if data.startswith(codecs.BOM_UTF8):
        return data[len(codecs.BOM_UTF8) :].decode("utf-8", errors="replace")
    # Non-Unicode INF files are ANSI.
    return data.decode("cp1252", errors="replace")


def _strip_comment(line: str) -> str:
    out = []
    quoted = False
    for ch in line:
        if ch == '"':
            quoted = not quoted
        elif ch == ";" and not quoted:
            break
        out.append(ch)
    return "".join(out)


def _sections(text: str) -> Dict[str, Dict[str, str]]:
    sections: Dict[str, Dict[str, str]] = {}
    cur: Optional[Dict[str, str]] = None
    for raw in text.splitlines():
        line = _strip_comment(raw).strip()
        if not line:
            continue
        m = _SECTION_RE.match(line)
        if m:
            cur = sections.setdefault(m.group(1).strip().lower(), {})
            continue
        if cur is None:
            continue
        e = _ENTRY_RE.match(line)
        if e:
            # First definition wins, as in the INF processor.
            cur.setdefault(e.group(1).strip().lower(), e.group(2).strip().strip('"'))
    return sections


def parse_inf_version(text: str) -> Dict[str, str]:
    """[Version] fields with %token% references resolved from [Strings]."""

    sections = _sections(text)
    strings = sections.get("strings") or {}
    version = sections.get("version") or {}

    def resolve(v: str) -> str:
        return _TOKEN_RE.sub(lambda m: strings.get(m.group(1).lower(), m.group(0)), v)

    return {k: resolve(v) for k, v in version.items()}


def load_driver_package(inf: Path) -> DriverPackage:
    fields = parse_inf_version(read_inf_text(inf))
    return DriverPackage(
        inf_path=str(inf),
        class_name=fields.get("class", ""),
        class_guid=fields.get("classguid", "").lower(),
        provider=fields.get("provider", ""),
        version=fields.get("driverver", ""),
    )


def discover_drivers(root: str, *, storage_only: bool = True) -> List[DriverPackage]:
    base = Path(root)
    if not base.is_dir():
        raise FileNotFoundError(root)

    found: List[DriverPackage] = []
    for inf in sorted(p for p in base.rglob("*") if p.is_file() and p.suffix.lower() == ".inf"):
        try:
            pkg = load_driver_package(inf)
        except OSError as e:
            logger.warning("Unreadable INF %s: %s", str(inf), e)
            continue
        if storage_only and not pkg.is_storage():
            continue
        found.append(pkg)

    logger.info("Discovered %d driver package(s) under %s (storage_only=%s)", len(found), root, storage_only)
    return found


def stage_drivers(packages: Iterable[DriverPackage], dest: str, *, dry_run: bool = False) -> List[str]:
    """Copy each package directory under dest; returns staged directories."""

    staged: List[str] = []
    seen: Set[str] = set()
    names: Set[str] = set()
    for pkg in packages:
        src = pkg.package_dir
        if src in seen:
            continue
        seen.add(src)
        name = Path(src).name or "driver"
        unique = name
        n = 1
        while unique.lower() in names:
            n += 1
            unique = f"{name}_{n}"
        names.add(unique.lower())
        out = str(Path(dest) / unique)
        copy_tree(src, out, dry_run=dry_run)
        staged.append(out)
    return staged


def extract_drivers(
    dest: str,
    *,
    storage_only: bool = False,
    staging: str | None = None,
    dism_exe: str = "dism",
    dry_run: bool = False,
) -> List[DriverPackage]:
    """Export third-party drivers of the running system.

    With storage_only, storage controller packages are additionally staged
    into `staging` (a folder ready for the build's drivers.path).
    """

    export_online_drivers(dest, dism_exe=dism_exe, dry_run=dry_run)
    if dry_run:
        return []
    packages = discover_drivers(dest, storage_only=storage_only)
    if storage_only and staging:
        stage_drivers(packages, staging, dry_run=dry_run)
    return packages
