from __future__ import annotations

import functools
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .build_config import BuildConfig
from .build_state import is_completed, mark_completed, record, recorded, rewind_to
from .lib import dism
from .lib.assets import copy_file, copy_tree
from .lib.cancel import CancellationToken
from .lib.command import CmdResult, run_cmd
from .lib.editions import normalize_arch, select_image
from .lib.env import Tools
from .lib.iso import dismount_iso, make_iso, mount_iso
from .lib.manifests import load_debloat_profile, load_registry_tweaks, load_store_manifest
from .lib.packages import StorePackage, match_prefixes, order_by_dependencies
from .lib.parallel import (
    CommandTask,
    JobResult,
    Outcome,
    ParallelConfig,
    apply_registry_writes_in_parallel,
    remove_items_in_parallel,
    run_commands_in_parallel,
    summarize,
)
from .lib.registry import RegistryWrite, load_hives, reg_delete_argv, unload_hives

logger = logging.getLogger(__name__)

# SID of BUILTIN\Administrators; group names are localized.
ADMINISTRATORS_SID = "*S-1-5-32-544"


@dataclass(frozen=True)
class BuildCtx:
    cfg: BuildConfig
    variant: str
    dry_run: bool
    parallel: ParallelConfig
    cancel_token: Optional[CancellationToken] = None

    @property
    def tools(self) -> Tools:
        return self.cfg.tools

    @property
    def work_variant_dir(self) -> Path:
        return Path(self.cfg.work_dir) / self.variant

    @property
    def media_dir(self) -> Path:
        return self.work_variant_dir / "media"

    @property
    def mount_dir(self) -> Path:
        return self.work_variant_dir / "mount"

    @property
    def boot_mount_dir(self) -> Path:
        return self.work_variant_dir / "boot_mount"

    @property
    def sources_dir(self) -> Path:
        return self.media_dir / "sources"

    @property
    def install_wim(self) -> Path:
        return self.sources_dir / "install.wim"

    @property
    def install_esd(self) -> Path:
        return self.sources_dir / "install.esd"

    @property
    def boot_wim(self) -> Path:
        return self.sources_dir / "boot.wim"

    @property
    def iso_path(self) -> Path:
        return Path(self.cfg.output_dir) / self.cfg.iso_name


StepFn = Callable[..., None]


def build_step(step_id: str) -> Callable[[Callable[..., None]], StepFn]:
    """Resume guard: skip completed steps unless forced, mark on success."""

    def deco(fn: Callable[..., None]) -> StepFn:
        @functools.wraps(fn)
        def wrapper(*, ctx: BuildCtx, state: Dict[str, Any], force: bool) -> None:
            if (not force) and is_completed(state, variant=ctx.variant, step_id=step_id):
                logger.info("[%s] skip %s", ctx.variant, step_id)
                return
            if ctx.cancel_token is not None:
                ctx.cancel_token.raise_if_cancelled()
            logger.info("[%s] run %s", ctx.variant, step_id)
            fn(ctx=ctx, state=state)
            mark_completed(state, variant=ctx.variant, step_id=step_id)

        wrapper.step_id = step_id  # type: ignore[attr-defined]
        return wrapper

    return deco


def _check_results(ctx: BuildCtx, state: Dict[str, Any], what: str, results: Sequence[JobResult]) -> None:
    s = summarize(results)
    record(state, variant=ctx.variant, key=what, value=s.as_dict())
    logger.info(
        "[%s] %s: %d succeeded, %d skipped, %d failed", ctx.variant, what, s.succeeded, s.skipped, s.failed
    )
    if s.failed and ctx.cfg.fail_on_error:
        failed = [r.item for r in results if r.outcome is Outcome.FAILED]
        raise RuntimeError(f"{what}: {s.failed} item(s) failed: {', '.join(failed[:10])}")


def _hives_for(writes: Iterable[RegistryWrite], delete_keys: Iterable[str]) -> List[str]:
    # HKLM\zSOFTWARE\... -> zSOFTWARE
    hives: List[str] = []
    for key in [w.path for w in writes] + list(delete_keys):
        parts = key.split("\\")
        if len(parts) < 2 or parts[0].upper() not in {"HKLM", "HKEY_LOCAL_MACHINE"}:
            raise ValueError(f"Offline registry key must live under HKLM\\z<HIVE>: {key}")
        if parts[1] not in hives:
            hives.append(parts[1])
    return hives


def _apply_tweaks(
    ctx: BuildCtx,
    state: Dict[str, Any],
    image_dir: Path,
    tweak_sets: List[str],
    what: str,
) -> None:
    writes, deletes = load_registry_tweaks(tweak_sets, override=ctx.cfg.manifest_override("registry"))
    if not writes and not deletes:
        logger.info("[%s] %s: nothing to apply", ctx.variant, what)
        return

    reg_exe = ctx.tools.reg
    loaded = load_hives(str(image_dir), hives=_hives_for(writes, deletes), reg_exe=reg_exe, dry_run=ctx.dry_run)
    try:
        results = apply_registry_writes_in_parallel(
            writes,
            config=ctx.parallel,
            reg_exe=reg_exe,
            cancel_token=ctx.cancel_token,
            dry_run=ctx.dry_run,
        )
        results += run_commands_in_parallel(
            [CommandTask(command=reg_delete_argv(k, reg_exe=reg_exe), label=k, dry_run=ctx.dry_run) for k in deletes],
            config=ctx.parallel,
            cancel_token=ctx.cancel_token,
        )
    finally:
        unload_hives(loaded, reg_exe=reg_exe, dry_run=ctx.dry_run)

    _check_results(ctx, state, what, results)


def _take_ownership(path: str, tools: Tools, dry_run: bool, *, timeout_s: Optional[float] = None) -> CmdResult:
    is_dir = Path(path).is_dir()
    argv = [tools.takeown, "/f", path]
    if is_dir:
        argv += ["/r", "/d", "y"]
    run_cmd(argv, dry_run=dry_run, timeout_s=timeout_s)
    icacls = [tools.icacls, path, "/grant", f"{ADMINISTRATORS_SID}:F", "/c", "/q"]
    if is_dir:
        icacls.insert(-2, "/t")
    return run_cmd(icacls, check=False, dry_run=dry_run, timeout_s=timeout_s)


@build_step("00_prepare_workspace")
def step_00_prepare_workspace(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    if not ctx.dry_run:
        ctx.work_variant_dir.mkdir(parents=True, exist_ok=True)
    dism.cleanup_mountpoints(dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)

    stale = [p for p in (ctx.media_dir, ctx.mount_dir, ctx.boot_mount_dir) if p.exists()]
    if stale:
        results = remove_items_in_parallel(stale, True, config=ctx.parallel, dry_run=ctx.dry_run)
        failed = [r for r in results if r.outcome is Outcome.FAILED]
        if failed:
            raise RuntimeError(f"Unable to clean work dir: {failed[0].item}: {failed[0].error}")

    src = ctx.cfg.source
    if ctx.cfg.source_is_iso:
        if not ctx.dry_run and not Path(src).is_file():
            raise FileNotFoundError(src)
        drive = mount_iso(src, powershell_exe=ctx.tools.powershell, dry_run=ctx.dry_run)
        try:
            copy_tree(drive, str(ctx.media_dir), dry_run=ctx.dry_run)
        finally:
            dismount_iso(src, powershell_exe=ctx.tools.powershell, dry_run=ctx.dry_run)
    else:
        copy_tree(src, str(ctx.media_dir), dry_run=ctx.dry_run)

    if not ctx.dry_run and not (ctx.install_wim.exists() or ctx.install_esd.exists()):
        raise RuntimeError(f"No install.wim or install.esd under {ctx.sources_dir}")


@build_step("10_select_image")
def step_10_select_image(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    is_esd = (not ctx.install_wim.exists()) and ctx.install_esd.exists()
    image_file = str(ctx.install_esd if is_esd else ctx.install_wim)

    images = dism.get_images(image_file, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
    if ctx.dry_run and not images:
        index = int(ctx.cfg.edition) if ctx.cfg.edition.isdigit() else 1
        logger.info("[%s] would auto-detect edition from %s (assuming index %s)", ctx.variant, image_file, index)
        record(state, variant=ctx.variant, key="image_index", value=index)
        return

    chosen = select_image(images, ctx.cfg.edition, prefer_ltsc=ctx.variant.startswith("ltsc"))
    details = dism.get_image_details(image_file, chosen.index, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
    arch = normalize_arch((details or chosen).architecture)

    index = chosen.index
    if is_esd:
        # Solid-compressed ESD cannot be mounted for servicing.
        logger.info("[%s] converting install.esd index %s to install.wim", ctx.variant, index)
        dism.export_image(
            image_file, index, str(ctx.install_wim), compression="max", dism_exe=ctx.tools.dism, dry_run=ctx.dry_run
        )
        if not ctx.dry_run:
            ctx.install_esd.unlink()
        index = 1

    record(state, variant=ctx.variant, key="image_index", value=index)
    record(state, variant=ctx.variant, key="image_name", value=chosen.name)
    record(state, variant=ctx.variant, key="architecture", value=arch)
    if details is not None:
        record(state, variant=ctx.variant, key="image_version", value=details.version)
        record(state, variant=ctx.variant, key="image_edition", value=details.edition)
    logger.info("[%s] selected %s (index %s, arch %s)", ctx.variant, chosen.name, chosen.index, arch)


@build_step("20_mount_image")
def step_20_mount_image(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    index = int(recorded(state, variant=ctx.variant, key="image_index", default=1))
    dism.mount_image(
        str(ctx.install_wim), index, str(ctx.mount_dir), dism_exe=ctx.tools.dism, dry_run=ctx.dry_run
    )
    record(state, variant=ctx.variant, key="mounted", value=True)


@build_step("30_remove_appx")
def step_30_remove_appx(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    profile = load_debloat_profile(ctx.cfg.debloat_profile, override=ctx.cfg.manifest_override("debloat"))
    mount = str(ctx.mount_dir)

    installed = [p.package_name for p in dism.list_provisioned_appx(mount, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)]
    targets = match_prefixes(installed, profile["appx_prefixes"])
    if ctx.dry_run and not installed:
        logger.info("[%s] would remove provisioned apps matching %d prefixes", ctx.variant, len(profile["appx_prefixes"]))

    # DISM serializes servicing of one mounted image; no fan-out here.
    removed: List[str] = []
    failed: List[str] = []
    for name in targets:
        r = dism.remove_provisioned_appx(mount, name, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
        (removed if r.returncode == 0 else failed).append(name)

    record(state, variant=ctx.variant, key="appx_removed", value=removed)
    if failed:
        logger.warning("[%s] failed to remove %d provisioned app(s): %s", ctx.variant, len(failed), ", ".join(failed))
        record(state, variant=ctx.variant, key="appx_failed", value=failed)
        if ctx.cfg.fail_on_error:
            raise RuntimeError(f"Failed to remove provisioned apps: {', '.join(failed)}")


@build_step("35_remove_packages")
def step_35_remove_packages(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    profile = load_debloat_profile(ctx.cfg.debloat_profile, override=ctx.cfg.manifest_override("debloat"))
    mount = str(ctx.mount_dir)

    installed = dism.list_packages(mount, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
    targets = match_prefixes(installed, profile["package_prefixes"])

    removed: List[str] = []
    failed: List[str] = []
    for pkg in targets:
        r = dism.remove_package(mount, pkg, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
        (removed if r.returncode == 0 else failed).append(pkg)

    record(state, variant=ctx.variant, key="packages_removed", value=removed)
    if failed:
        # Permanent packages refuse removal; that is expected on some builds.
        logger.warning("[%s] failed to remove %d package(s): %s", ctx.variant, len(failed), ", ".join(failed))
        record(state, variant=ctx.variant, key="packages_failed", value=failed)
        if ctx.cfg.fail_on_error:
            raise RuntimeError(f"Failed to remove packages: {', '.join(failed)}")


@build_step("40_remove_files")
def step_40_remove_files(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    profile = load_debloat_profile(ctx.cfg.debloat_profile, override=ctx.cfg.manifest_override("debloat"))
    paths = [str(ctx.mount_dir / rel.lstrip("/\\")) for rel in profile["remove_paths"]]

    present = [p for p in paths if os.path.lexists(p)]
    if present:
        tools = ctx.tools
        ownership = run_commands_in_parallel(
            [
                CommandTask(
                    command=functools.partial(_take_ownership, p, tools, ctx.dry_run),
                    label=f"takeown {p}",
                    timed_call=True,
                )
                for p in present
            ],
            config=ctx.parallel,
            cancel_token=ctx.cancel_token,
        )
        _check_results(ctx, state, "take_ownership", ownership)

    results = remove_items_in_parallel(
        paths,
        True,
        config=ctx.parallel,
        cancel_token=ctx.cancel_token,
        dry_run=ctx.dry_run,
    )
    _check_results(ctx, state, "remove_files", results)


@build_step("50_apply_registry")
def step_50_apply_registry(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    _apply_tweaks(ctx, state, ctx.mount_dir, ctx.cfg.tweak_sets, "registry_writes")


@build_step("55_inject_drivers")
def step_55_inject_drivers(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    drivers = ctx.cfg.drivers_path
    if not drivers:
        logger.info("[%s] no drivers.path configured; skipping driver injection", ctx.variant)
        return
    if not ctx.dry_run and not Path(drivers).is_dir():
        raise FileNotFoundError(drivers)
    dism.add_driver(str(ctx.mount_dir), drivers, recurse=True, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
    record(state, variant=ctx.variant, key="drivers_injected", value=drivers)


@build_step("60_add_store")
def step_60_add_store(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    pkg_dir = ctx.cfg.store_packages_dir
    if not pkg_dir:
        raise RuntimeError("store.packages_dir is required for the ltsc_store variant")

    packages = [StorePackage.from_mapping(raw) for raw in load_store_manifest(override=ctx.cfg.manifest_override("store"))]
    ordered = order_by_dependencies(packages)

    if not ctx.dry_run:
        missing = [p.file for p in ordered if not (Path(pkg_dir) / p.file).is_file()]
        missing += [p.license for p in ordered if p.license and not (Path(pkg_dir) / p.license).is_file()]
        if missing:
            raise FileNotFoundError(f"Missing store package files in {pkg_dir}: {', '.join(missing)}")

    for p in ordered:
        dism.add_provisioned_appx(
            str(ctx.mount_dir),
            str(Path(pkg_dir) / p.file),
            license_path=str(Path(pkg_dir) / p.license) if p.license else None,
            region="all" if p.license else None,
            dism_exe=ctx.tools.dism,
            dry_run=ctx.dry_run,
        )
    record(state, variant=ctx.variant, key="store_packages", value=[p.id for p in ordered])


@build_step("65_add_browser")
def step_65_add_browser(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    installer = ctx.cfg.browser_installer
    if not installer:
        logger.info("[%s] no browser.installer configured; skipping", ctx.variant)
        return

    scripts = ctx.mount_dir / "Windows" / "Setup" / "Scripts"
    name = Path(installer).name
    copy_file(installer, str(scripts / name), dry_run=ctx.dry_run)

    line = f'"%WINDIR%\\Setup\\Scripts\\{name}" {ctx.cfg.browser_arguments}'.rstrip()
    setup_complete = scripts / "SetupComplete.cmd"
    if ctx.dry_run:
        logger.info("[%s] would add to %s: %s", ctx.variant, str(setup_complete), line)
    else:
        existing = setup_complete.read_text(encoding="utf-8").splitlines() if setup_complete.exists() else ["@echo off"]
        if line not in existing:
            existing.append(line)
        setup_complete.write_text("\r\n".join(existing) + "\r\n", encoding="utf-8")
    record(state, variant=ctx.variant, key="browser", value=name)


@build_step("70_commit_image")
def step_70_commit_image(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    if ctx.cfg.cleanup_components:
        dism.cleanup_image(str(ctx.mount_dir), dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
    dism.unmount_image(str(ctx.mount_dir), commit=True, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
    record(state, variant=ctx.variant, key="mounted", value=False)


@build_step("75_service_boot_image")
def step_75_service_boot_image(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    if not ctx.dry_run and not ctx.boot_wim.exists():
        logger.warning("[%s] %s missing; skipping boot image servicing", ctx.variant, str(ctx.boot_wim))
        return

    mount = ctx.boot_mount_dir
    dism.mount_image(
        str(ctx.boot_wim), ctx.cfg.boot_image_index, str(mount), dism_exe=ctx.tools.dism, dry_run=ctx.dry_run
    )
    record(state, variant=ctx.variant, key="boot_mounted", value=True)

    if ctx.cfg.boot_tweak_sets:
        _apply_tweaks(ctx, state, mount, ctx.cfg.boot_tweak_sets, "boot_registry_writes")
    if ctx.cfg.drivers_path:
        dism.add_driver(str(mount), ctx.cfg.drivers_path, recurse=True, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)

    dism.unmount_image(str(mount), commit=True, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
    record(state, variant=ctx.variant, key="boot_mounted", value=False)


@build_step("80_export_image")
def step_80_export_image(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    index = int(recorded(state, variant=ctx.variant, key="image_index", default=1))
    compression = ctx.cfg.compression
    # Recovery compression produces an ESD.
    final = ctx.install_esd if compression == "recovery" else ctx.install_wim
    tmp = ctx.sources_dir / f"install_export{final.suffix}"

    dism.export_image(
        str(ctx.install_wim), index, str(tmp), compression=compression, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run
    )
    if not ctx.dry_run:
        os.replace(tmp, final)
        if final != ctx.install_wim and ctx.install_wim.exists():
            ctx.install_wim.unlink()
    record(state, variant=ctx.variant, key="image_index", value=1)


@build_step("85_apply_unattend")
def step_85_apply_unattend(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    unattend = ctx.cfg.unattend
    if not unattend:
        return
    copy_file(unattend, str(ctx.media_dir / "autounattend.xml"), dry_run=ctx.dry_run)


@build_step("90_create_iso")
def step_90_create_iso(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    label = ctx.cfg.volume_label or str(recorded(state, variant=ctx.variant, key="image_name", default="") or "")
    make_iso(
        str(ctx.media_dir),
        str(ctx.iso_path),
        label=label or None,
        oscdimg_exe=ctx.tools.oscdimg,
        dry_run=ctx.dry_run,
    )
    record(state, variant=ctx.variant, key="iso_path", value=str(ctx.iso_path))


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


@build_step("95_package_outputs")
def step_95_package_outputs(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    out_dir = Path(ctx.cfg.output_dir)
    if ctx.dry_run:
        logger.info("[%s] would write %s", ctx.variant, str(out_dir / "SHA256SUMS"))
        return

    if not ctx.iso_path.exists():
        raise RuntimeError(f"Missing ISO output: {ctx.iso_path}")

    lines = []
    for p in sorted(out_dir.glob("*.iso")):
        if p.is_file():
            lines.append(f"{_sha256(p)}  {p.name}")
    (out_dir / "SHA256SUMS").write_text("\n".join(lines) + "\n", encoding="utf-8")


COMMON_HEAD = [
    step_00_prepare_workspace,
    step_10_select_image,
    step_20_mount_image,
    step_30_remove_appx,
    step_35_remove_packages,
    step_40_remove_files,
    step_50_apply_registry,
    step_55_inject_drivers,
]

COMMON_TAIL = [
    step_65_add_browser,
    step_70_commit_image,
    step_75_service_boot_image,
    step_80_export_image,
    step_85_apply_unattend,
    step_90_create_iso,
    step_95_package_outputs,
]

VARIANT_STEPS: Dict[str, List[StepFn]] = {
    "standard": COMMON_HEAD + COMMON_TAIL,
    "ltsc": COMMON_HEAD + COMMON_TAIL,
    "ltsc_store": COMMON_HEAD + [step_60_add_store] + COMMON_TAIL,
}


def step_ids(variant: str) -> List[str]:
    return [fn.step_id for fn in VARIANT_STEPS[variant]]  # type: ignore[attr-defined]


def abort_build(ctx: BuildCtx, state: Dict[str, Any]) -> None:
    """Discard mounted images after a failure and rewind resume state."""

    order = step_ids(ctx.variant)
    if recorded(state, variant=ctx.variant, key="boot_mounted"):
        dism.unmount_image(str(ctx.boot_mount_dir), commit=False, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
        record(state, variant=ctx.variant, key="boot_mounted", value=False)
        rewind_to(state, variant=ctx.variant, step_id="75_service_boot_image", order=order)
    if recorded(state, variant=ctx.variant, key="mounted"):
        dism.unmount_image(str(ctx.mount_dir), commit=False, dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)
        record(state, variant=ctx.variant, key="mounted", value=False)
        rewind_to(state, variant=ctx.variant, step_id="20_mount_image", order=order)
    dism.cleanup_mountpoints(dism_exe=ctx.tools.dism, dry_run=ctx.dry_run)


def reconcile_mounts(ctx: BuildCtx, state: Dict[str, Any]) -> None:
    """A previous run died with the image mounted (e.g. reboot): remount on resume."""

    if not recorded(state, variant=ctx.variant, key="mounted") or ctx.dry_run:
        return
    if (ctx.mount_dir / "Windows").is_dir():
        return
    logger.warning("[%s] image recorded as mounted but %s is empty; remounting", ctx.variant, str(ctx.mount_dir))
    dism.cleanup_mountpoints(dism_exe=ctx.tools.dism)
    record(state, variant=ctx.variant, key="mounted", value=False)
    rewind_to(state, variant=ctx.variant, step_id="20_mount_image", order=step_ids(ctx.variant))
