from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Union

from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

VALUE_TYPES = {
    "REG_SZ",
    "REG_EXPAND_SZ",
    "REG_MULTI_SZ",
    "REG_DWORD",
    "REG_QWORD",
    "REG_BINARY",
    "REG_NONE",
}

# Offline hives of a mounted image, loaded under HKLM\<key>.
HIVES: Dict[str, str] = {
    "zCOMPONENTS": "Windows/System32/config/COMPONENTS",
    "zDEFAULT": "Windows/System32/config/DEFAULT",
    "zNTUSER": "Users/Default/ntuser.dat",
    "zSOFTWARE": "Windows/System32/config/SOFTWARE",
    "zSYSTEM": "Windows/System32/config/SYSTEM",
}


@dataclass(frozen=True)
class RegistryWrite:
    """A single `reg add` operation.

    name=None targets the key's default value (/ve).
    """

    path: str
    name: str | None
    type: str = "REG_SZ"
    value: Union[str, int, None] = ""

    def __post_init__(self) -> None:
        if not self.path or not self.path.strip():
            raise ValueError("registry write needs a key path")
        if self.type.upper() not in VALUE_TYPES:
            raise ValueError(f"Unsupported registry value type: {self.type}")
        object.__setattr__(self, "type", self.type.upper())
        if self.type in {"REG_DWORD", "REG_QWORD"} and not _is_int_like(self.value):
            raise ValueError(f"{self.type} value must be an integer: {self.path}\\{self.name}={self.value!r}")

    @property
    def identity(self) -> str:
        return f"{self.path}\\{self.name if self.name is not None else '(default)'}"

    def to_argv(self, reg_exe: str = "reg") -> list[str]:
        argv = [reg_exe, "add", self.path]
        if self.name is None:
            argv.append("/ve")
        else:
            argv += ["/v", self.name]
        argv += ["/t", self.type]
        if self.type != "REG_NONE" and self.value is not None:
            argv += ["/d", str(self.value)]
        argv.append("/f")
        return argv

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "RegistryWrite":
        if "path" not in raw:
            raise ValueError(f"registry write missing 'path': {dict(raw)}")
        return cls(
            path=str(raw["path"]),
            name=None if raw.get("name") is None else str(raw["name"]),
            type=str(raw.get("type") or "REG_SZ"),
            value=raw.get("value", ""),
        )


def _is_int_like(v: Any) -> bool:
    if isinstance(v, bool):
        return False
    if isinstance(v, int):
        return True
    try:
        int(str(v), 0)
        return True
    except ValueError:
        return False


def reg_add(
    write: RegistryWrite,
    *,
    reg_exe: str = "reg",
    check: bool = True,
    dry_run: bool = False,
    timeout_s: float | None = None,
) -> CmdResult:
    return run_cmd(write.to_argv(reg_exe), check=check, dry_run=dry_run, timeout_s=timeout_s)


def reg_delete_argv(key: str, *, reg_exe: str = "reg") -> list[str]:
    return [reg_exe, "delete", key, "/f"]


def reg_delete(key: str, *, reg_exe: str = "reg", check: bool = True, dry_run: bool = False) -> CmdResult:
    return run_cmd(reg_delete_argv(key, reg_exe=reg_exe), check=check, dry_run=dry_run)


def load_hives(
    mount_dir: str,
    *,
    hives: Sequence[str] | None = None,
    reg_exe: str = "reg",
    dry_run: bool = False,
) -> List[str]:
    """Load offline hives from a mounted image. Returns the keys loaded.

    On a partial failure the already-loaded hives are unloaded before raising.
    """

    names = list(hives) if hives is not None else list(HIVES)
    loaded: List[str] = []
    try:
        for name in names:
            if name not in HIVES:
                raise ValueError(f"Unknown hive: {name}")
            hive_file = Path(mount_dir) / HIVES[name]
            run_cmd([reg_exe, "load", f"HKLM\\{name}", str(hive_file)], dry_run=dry_run)
            loaded.append(name)
    except Exception:
        unload_hives(loaded, reg_exe=reg_exe, dry_run=dry_run)
        raise
    return loaded


def unload_hives(names: Iterable[str], *, reg_exe: str = "reg", dry_run: bool = False) -> None:
    for name in reversed(list(names)):
        r = run_cmd([reg_exe, "unload", f"HKLM\\{name}"], check=False, dry_run=dry_run)
        if r.returncode != 0:
            logger.warning("Failed to unload HKLM\\%s (rc=%s)", name, r.returncode)
