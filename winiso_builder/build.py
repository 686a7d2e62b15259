from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .build_config import load_build_config
from .build_state import ensure_build_defaults, load_build_state, save_build_state, variant_state
from .build_steps import VARIANT_STEPS, BuildCtx, abort_build, reconcile_mounts
from .lib.cancel import CancellationToken
from .logging_utils import configure_logging

logger = logging.getLogger(__name__)


DEFAULT_BUILD_CONFIG = "build_config.yaml"
DEFAULT_BUILD_STATE = "build/build_state.json"
DEFAULT_BUILD_LOG = "logs/winiso-builder.log"


def run_build(
    *,
    config_path: str,
    state_path: str,
    log_path: str,
    variant: str | None = None,
    edition: str | None = None,
    max_jobs: Optional[int] = None,
    dry_run: bool = False,
    force: bool = False,
    cancel_token: CancellationToken | None = None,
) -> Dict[str, Any]:
    """Build one image variant, resuming from state_path. Returns the variant's state."""

    configure_logging(log_path=log_path)

    cfg = load_build_config(config_path).with_overrides(variant=variant, edition=edition)
    state = ensure_build_defaults(load_build_state(state_path))

    ctx = BuildCtx(
        cfg=cfg,
        variant=cfg.variant,
        dry_run=dry_run,
        parallel=cfg.parallel(max_jobs=max_jobs),
        cancel_token=cancel_token,
    )
    logger.info(
        "=== Build variant: %s (edition=%s, jobs=%d, dry_run=%s) ===",
        ctx.variant,
        cfg.edition,
        ctx.parallel.concurrency_limit,
        dry_run,
    )

    reconcile_mounts(ctx, state)
    try:
        for fn in VARIANT_STEPS[ctx.variant]:
            fn(ctx=ctx, state=state, force=force)
            save_build_state(state_path, state)
    except BaseException:
        logger.exception("[%s] build failed", ctx.variant)
        try:
            abort_build(ctx, state)
        finally:
            save_build_state(state_path, state)
        raise

    logger.info("[%s] build complete: %s", ctx.variant, str(ctx.iso_path))
    return variant_state(state, ctx.variant)
