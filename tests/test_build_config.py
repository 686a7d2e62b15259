from __future__ import annotations

from pathlib import Path

import pytest

from winiso_builder.build_config import DEFAULT_TWEAK_SETS, BuildConfig, load_build_config


def test_defaults() -> None:
    cfg = BuildConfig(raw={"source": r"D:\win11.iso"})
    assert cfg.source_is_iso
    assert cfg.variant == "standard"
    assert cfg.edition == "auto"
    assert cfg.iso_name == "winiso-standard.iso"
    assert cfg.debloat_profile == "standard"
    assert cfg.tweak_sets == DEFAULT_TWEAK_SETS
    assert cfg.boot_tweak_sets == ["setup_bypass"]
    assert cfg.boot_image_index == 2
    assert cfg.tools.oscdimg == "oscdimg"
    assert not cfg.fail_on_error


def test_ltsc_uses_ltsc_profile() -> None:
    assert BuildConfig(raw={"variant": "ltsc_store"}).debloat_profile == "ltsc"


def test_invalid_values() -> None:
    with pytest.raises(RuntimeError):
        _ = BuildConfig(raw={}).source
    with pytest.raises(ValueError):
        _ = BuildConfig(raw={"variant": "server"}).variant
    with pytest.raises(ValueError):
        _ = BuildConfig(raw={"tools": {"cdrtools": "mkisofs"}}).tools


def test_parallel_precedence() -> None:
    env = {"MAX_PARALLEL_JOBS": "6"}
    assert BuildConfig(raw={}).parallel(environ=env).concurrency_limit == 6
    cfg = BuildConfig(raw={"parallel": {"max_jobs": 3, "item_timeout_s": 60, "scheduling": "continuous"}})
    p = cfg.parallel(environ=env)
    assert p.concurrency_limit == 3
    assert p.item_timeout_s == 60.0
    assert p.scheduling == "continuous"
    assert cfg.parallel(environ=env, max_jobs=8).concurrency_limit == 8


def test_parallel_max_jobs_zero_means_auto() -> None:
    env = {"MAX_PARALLEL_JOBS": "6"}
    cfg = BuildConfig(raw={"parallel": {"max_jobs": 0}})
    assert cfg.parallel(environ=env).concurrency_limit == 6
    assert cfg.parallel(environ={}).max_jobs is None
    assert BuildConfig(raw={}).parallel(environ=env, max_jobs=0).concurrency_limit == 6


def test_with_overrides_ignores_none() -> None:
    cfg = BuildConfig(raw={"variant": "ltsc", "edition": "3"}).with_overrides(variant=None, edition="Pro")
    assert cfg.variant == "ltsc"
    assert cfg.edition == "Pro"


def test_load_build_config(tmp_path: Path) -> None:
    p = tmp_path / "build_config.yaml"
    p.write_text("source: media\nvariant: ltsc\nparallel:\n  fail_on_error: true\n", encoding="utf-8")
    cfg = load_build_config(str(p))
    assert cfg.variant == "ltsc"
    assert cfg.fail_on_error

    bad = tmp_path / "list.yaml"
    bad.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_build_config(str(bad))
    with pytest.raises(FileNotFoundError):
        load_build_config(str(tmp_path / "missing.yaml"))
