from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping


@dataclass(frozen=True)
class Tools:
    """Executables for the external tools the build shells out to."""

    dism: str = "dism"
    reg: str = "reg"
    oscdimg: str = "oscdimg"
    powershell: str = "powershell"
    takeown: str = "takeown"
    icacls: str = "icacls"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "Tools":
        raw = raw or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown tools configured: {', '.join(unknown)}")
        return cls(**{k: str(v) for k, v in raw.items() if v})


DEFAULT_TOOLS = Tools()
