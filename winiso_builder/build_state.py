from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List


def load_build_state(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("build_state.json must contain an object")
    return data


def save_build_state(path: str, state: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(state, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def ensure_build_defaults(state: Dict[str, Any]) -> Dict[str, Any]:
    state.setdefault("variants", {})
    return state


def variant_state(state: Dict[str, Any], variant: str) -> Dict[str, Any]:
    return state.setdefault("variants", {}).setdefault(variant, {})


def mark_completed(state: Dict[str, Any], *, variant: str, step_id: str) -> None:
    completed = variant_state(state, variant).setdefault("completed_steps", [])
    if step_id not in completed:
        completed.append(step_id)


def is_completed(state: Dict[str, Any], *, variant: str, step_id: str) -> bool:
    v = (state.get("variants") or {}).get(variant) or {}
    return step_id in (v.get("completed_steps") or [])


def rewind_to(state: Dict[str, Any], *, variant: str, step_id: str, order: List[str]) -> None:
    """Forget step_id and every later step so a resume re-runs them."""

    if step_id not in order:
        return
    later = set(order[order.index(step_id) :])
    v = variant_state(state, variant)
    v["completed_steps"] = [s for s in (v.get("completed_steps") or []) if s not in later]


def record(state: Dict[str, Any], *, variant: str, key: str, value: Any) -> None:
    variant_state(state, variant).setdefault("decisions", {})[key] = value


def recorded(state: Dict[str, Any], *, variant: str, key: str, default: Any = None) -> Any:
    v = (state.get("variants") or {}).get(variant) or {}
    return (v.get("decisions") or {}).get(key, default)
