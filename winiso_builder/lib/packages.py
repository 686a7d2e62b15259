from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


def match_prefixes(names: Iterable[str], prefixes: Sequence[str]) -> List[str]:
    """Names starting with any prefix (case-insensitive), in input order, de-duplicated."""

    lowered = [p.lower() for p in prefixes if p]
    out: List[str] = []
    for n in names:
        if n in out:
            continue
        if any(n.lower().startswith(p) for p in lowered):
            out.append(n)
    return out


@dataclass(frozen=True)
class StorePackage:
    id: str
    file: str
    license: Optional[str] = None
    depends: Tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "StorePackage":
        if not raw.get("id") or not raw.get("file"):
            raise ValueError(f"store package needs 'id' and 'file': {dict(raw)}")
        return cls(
            id=str(raw["id"]),
            file=str(raw["file"]),
            license=str(raw["license"]) if raw.get("license") else None,
            depends=tuple(str(d) for d in (raw.get("depends") or [])),
        )


def order_by_dependencies(packages: Sequence[StorePackage]) -> List[StorePackage]:
    """Stable topological order: dependencies first, manifest order otherwise."""

    by_id: Dict[str, StorePackage] = {}
    for p in packages:
        if p.id in by_id:
            raise ValueError(f"Duplicate store package id: {p.id}")
        by_id[p.id] = p

    for p in packages:
        for dep in p.depends:
            if dep not in by_id:
                raise ValueError(f"Store package {p.id} depends on unknown package {dep}")

    ordered: List[StorePackage] = []
    done: set[str] = set()
    remaining = list(packages)
    while remaining:
        progressed = False
        for p in list(remaining):
            if all(d in done for d in p.depends):
                ordered.append(p)
                done.add(p.id)
                remaining.remove(p)
                progressed = True
                break
        if not progressed:
            raise ValueError(f"Dependency cycle among store packages: {', '.join(p.id for p in remaining)}")
    return ordered
