from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .lib.env import Tools
from .lib.parallel import ParallelConfig

VARIANTS = ("standard", "ltsc", "ltsc_store")

DEFAULT_TWEAK_SETS = [
    "bypass_requirements",
    "disable_sponsored_apps",
    "local_account_oobe",
    "disable_reserved_storage",
    "disable_chat_and_teams",
    "disable_telemetry",
    "disable_onedrive",
]


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any]

    def _section(self, key: str) -> Dict[str, Any]:
        return dict(self.raw.get(key) or {})

    @property
    def source(self) -> str:
        src = self.raw.get("source")
        if not src:
            raise RuntimeError("build config: 'source' (ISO file or extracted media folder) is required")
        return str(src)

    @property
    def source_is_iso(self) -> bool:
        return Path(self.source).suffix.lower() == ".iso"

    @property
    def variant(self) -> str:
        v = str(self.raw.get("variant") or "standard")
        if v not in VARIANTS:
            raise ValueError(f"Unknown variant {v!r} (expected one of {VARIANTS})")
        return v

    @property
    def edition(self) -> str:
        return str(self.raw.get("edition") or "auto")

    @property
    def work_dir(self) -> str:
        return str(self._section("paths").get("work_dir") or "build/work")

    @property
    def output_dir(self) -> str:
        return str(self._section("paths").get("output_dir") or "output")

    @property
    def iso_name(self) -> str:
        return str(self._section("output").get("iso_name") or f"winiso-{self.variant}.iso")

    @property
    def volume_label(self) -> Optional[str]:
        label = self._section("output").get("volume_label")
        return str(label) if label else None

    @property
    def compression(self) -> str:
        return str(self._section("output").get("compression") or "max")

    @property
    def cleanup_components(self) -> bool:
        return bool(self._section("output").get("cleanup_components", True))

    @property
    def tools(self) -> Tools:
        return Tools.from_mapping(self.raw.get("tools"))

    @property
    def debloat_profile(self) -> str:
        default = "standard" if self.variant == "standard" else "ltsc"
        return str(self._section("debloat").get("profile") or default)

    @property
    def tweak_sets(self) -> List[str]:
        sets = self._section("registry").get("tweak_sets")
        return list(DEFAULT_TWEAK_SETS if sets is None else sets)

    @property
    def boot_tweak_sets(self) -> List[str]:
        sets = self._section("boot_image").get("tweak_sets")
        return list(["setup_bypass"] if sets is None else sets)

    @property
    def boot_image_index(self) -> int:
        return int(self._section("boot_image").get("index") or 2)

    @property
    def drivers_path(self) -> Optional[str]:
        p = self._section("drivers").get("path")
        return str(p) if p else None

    @property
    def store_packages_dir(self) -> Optional[str]:
        p = self._section("store").get("packages_dir")
        return str(p) if p else None

    @property
    def browser_installer(self) -> Optional[str]:
        p = self._section("browser").get("installer")
        return str(p) if p else None

    @property
    def browser_arguments(self) -> str:
        return str(self._section("browser").get("arguments") or "/silent /install")

    @property
    def unattend(self) -> Optional[str]:
        p = self.raw.get("unattend")
        return str(p) if p else None

    def manifest_override(self, name: str) -> Optional[str]:
        p = self._section("manifests").get(name)
        return str(p) if p else None

    @property
    def fail_on_error(self) -> bool:
        return bool(self._section("parallel").get("fail_on_error", False))

    def parallel(self, *, environ: Mapping[str, str] | None = None, max_jobs: Optional[int] = None) -> ParallelConfig:
        """ParallelConfig from config, then MAX_PARALLEL_JOBS; max_jobs wins over both."""

        sec = self._section("parallel")
        jobs = max_jobs if max_jobs is not None and max_jobs > 0 else sec.get("max_jobs")
        timeout = sec.get("item_timeout_s")
        return ParallelConfig.from_env(
            os.environ if environ is None else environ,
            max_jobs=None if jobs is None else int(jobs),
            item_timeout_s=None if timeout is None else float(timeout),
            scheduling=str(sec.get("scheduling") or "waves"),
        )

    def with_overrides(self, **overrides: Any) -> "BuildConfig":
        raw = dict(self.raw)
        for k, v in overrides.items():
            if v is not None:
                raw[k] = v
        return BuildConfig(raw=raw)


def load_build_config(path: str) -> BuildConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("build config must be YAML")

    try:
        import yaml  # type: ignore
    except Exception as e:
        raise RuntimeError("PyYAML is required to read build_config.yaml") from e

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("build_config.yaml must contain a mapping/object")

    return BuildConfig(raw=raw)
