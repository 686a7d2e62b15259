from __future__ import annotations

import logging
import os
import shutil
import stat
from pathlib import Path

logger = logging.getLogger(__name__)


def copy_tree(src: str, dst: str, *, dry_run: bool = False) -> int:
    """Copy a media tree, clearing read-only attributes on the copies.

    Files copied off a mounted ISO keep the read-only bit, which later blocks
    DISM from committing into sources/. Returns the number of files copied.
    """

    s = Path(src)
    d = Path(dst)
    if dry_run:
        logger.info("Would copy tree %s -> %s", str(s), str(d))
        return 0
    if not s.exists():
        raise FileNotFoundError(src)

    copied = 0
    d.mkdir(parents=True, exist_ok=True)
    for item in s.rglob("*"):
        rel = item.relative_to(s)
        out = d / rel
        if item.is_dir():
            out.mkdir(parents=True, exist_ok=True)
        else:
            out.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, out)
            os.chmod(out, os.stat(out).st_mode | stat.S_IWRITE)
            copied += 1
    logger.info("Copied %d files %s -> %s", copied, str(s), str(d))
    return copied


def copy_file(src: str, dst: str, *, dry_run: bool = False) -> None:
    if dry_run:
        logger.info("Would copy %s -> %s", src, dst)
        return
    if not Path(src).is_file():
        raise FileNotFoundError(src)
    Path(dst).parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dst)
