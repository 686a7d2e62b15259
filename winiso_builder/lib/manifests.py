from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from .registry import RegistryWrite


def _manifests_dir() -> Path:
    # winiso_builder/lib/manifests.py -> winiso_builder/manifests
    return Path(__file__).resolve().parents[1] / "manifests"


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError("PyYAML required to load manifests") from e

    p = Path(path)
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Manifest must be a mapping/dict: {p}")
    return data


def _load(name: str, override: Optional[str]) -> Dict[str, Any]:
    return load_yaml(override or str(_manifests_dir() / f"{name}.yaml"))


def load_debloat_profile(profile: str, *, override: Optional[str] = None) -> Dict[str, List[str]]:
    """Return {appx_prefixes, package_prefixes, remove_paths} for a profile.

    A profile may `extends:` another; lists are concatenated parent first.
    """

    profiles = _load("debloat", override).get("profiles") or {}
    if profile not in profiles:
        raise RuntimeError(f"Unknown debloat profile {profile!r} (have: {', '.join(sorted(profiles))})")

    out: Dict[str, List[str]] = {"appx_prefixes": [], "package_prefixes": [], "remove_paths": []}
    chain: List[str] = []
    cur: Optional[str] = profile
    while cur:
        if cur in chain:
            raise RuntimeError(f"Debloat profile inheritance cycle: {' -> '.join(chain + [cur])}")
        chain.append(cur)
        cur = (profiles.get(cur) or {}).get("extends")
        if cur is not None and cur not in profiles:
            raise RuntimeError(f"Debloat profile {chain[-1]!r} extends unknown profile {cur!r}")

    for name in reversed(chain):
        body = profiles.get(name) or {}
        for key in out:
            items = body.get(key) or []
            if not isinstance(items, list):
                raise RuntimeError(f"debloat profile {name}: {key} must be a list")
            out[key].extend(str(i).strip() for i in items if str(i).strip())
    return out


def load_registry_tweaks(
    sets: List[str], *, override: Optional[str] = None
) -> tuple[List[RegistryWrite], List[str]]:
    """Collect (writes, keys_to_delete) for the named tweak sets, in order."""

    tweak_sets = _load("registry", override).get("tweak_sets") or {}
    writes: List[RegistryWrite] = []
    deletes: List[str] = []
    for name in sets:
        body = tweak_sets.get(name)
        if body is None:
            raise RuntimeError(f"Unknown registry tweak set {name!r}")
        for raw in body.get("writes") or []:
            writes.append(RegistryWrite.from_mapping(raw))
        deletes.extend(str(k) for k in (body.get("delete_keys") or []))
    return writes, deletes


def load_store_manifest(*, override: Optional[str] = None) -> List[Dict[str, Any]]:
    packages = _load("store", override).get("packages") or []
    if not isinstance(packages, list):
        raise RuntimeError("store manifest: packages must be a list")
    return packages
