from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

from .build import DEFAULT_BUILD_CONFIG, DEFAULT_BUILD_LOG, DEFAULT_BUILD_STATE, run_build
from .build_config import VARIANTS
from .lib.cancel import CancelledError
from .lib.command import CommandError
from .lib.drivers import discover_drivers, extract_drivers
from .logging_utils import configure_logging

logger = logging.getLogger(__name__)


def _cmd_build(args: argparse.Namespace) -> int:
    run_build(
        config_path=args.config,
        state_path=args.state,
        log_path=args.log,
        variant=args.variant,
        edition=args.edition,
        max_jobs=args.jobs,
        dry_run=bool(args.dry_run),
        force=bool(args.force),
    )
    return 0


def _cmd_export_drivers(args: argparse.Namespace) -> int:
    configure_logging(log_path=args.log)
    packages = extract_drivers(
        args.dest,
        storage_only=not args.all_classes,
        staging=args.staging,
        dism_exe=args.dism,
        dry_run=bool(args.dry_run),
    )
    logger.info("Exported to %s; %d package(s) selected", args.dest, len(packages))
    return 0


def _cmd_discover_drivers(args: argparse.Namespace) -> int:
    configure_logging(log_path=args.log, also_console=not args.json)
    packages = discover_drivers(args.path, storage_only=not args.all_classes)
    if args.json:
        print(json.dumps([p.as_dict() for p in packages], indent=2))
    else:
        for p in packages:
            print(f"{p.class_name or '?':<14} {p.provider or '?':<24} {p.version or '?':<22} {p.inf_path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="winiso-builder", description="Build customized Windows installation ISOs.")
    p.add_argument("--log", default=DEFAULT_BUILD_LOG, help="Path to log file")
    sub = p.add_subparsers(dest="command", required=True)

    b = sub.add_parser("build", help="Build (or resume) an image variant")
    b.add_argument("--config", default=DEFAULT_BUILD_CONFIG)
    b.add_argument("--state", default=DEFAULT_BUILD_STATE)
    b.add_argument("--variant", choices=VARIANTS, default=None, help="Override the config's variant")
    b.add_argument("--edition", default=None, help="Edition name or index (default: auto)")
    b.add_argument("--jobs", type=int, default=None, help="Max parallel jobs (overrides MAX_PARALLEL_JOBS)")
    b.add_argument("--dry-run", action="store_true", help="Log commands without running them")
    b.add_argument("--force", action="store_true", help="Re-run steps even if marked completed")
    b.set_defaults(func=_cmd_build)

    e = sub.add_parser("export-drivers", help="Export third-party drivers of this machine")
    e.add_argument("dest")
    e.add_argument("--staging", default=None, help="Copy storage driver packages here")
    e.add_argument("--all-classes", action="store_true", help="Select every driver class, not only storage")
    e.add_argument("--dism", default="dism")
    e.add_argument("--dry-run", action="store_true")
    e.set_defaults(func=_cmd_export_drivers)

    d = sub.add_parser("discover-drivers", help="List driver packages (INF files) under a folder")
    d.add_argument("path")
    d.add_argument("--all-classes", action="store_true")
    d.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    d.set_defaults(func=_cmd_discover_drivers)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return int(args.func(args))
    except KeyboardInterrupt:
        print("Interrupted; build state saved for resume.", file=sys.stderr)
        return 130
    except CancelledError:
        print("Cancelled; build state saved for resume.", file=sys.stderr)
        return 130
    except (CommandError, RuntimeError, ValueError, FileNotFoundError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
