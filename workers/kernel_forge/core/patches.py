"""
Patch engine — apply the ordered patch set to the source tree.

For each patch, in declared order:
  1. dry run (``patch -p1 -N --dry-run``); failure means already applied
     or conflicting → skip with a warning;
  2. apply; failure despite a clean dry run → warn and continue.

No patch outcome aborts the pipeline.  There is no dependency inference
between patches; order is exactly the profile's order.
"""
import logging
from typing import List

from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import ToolRunner
from kernel_forge.io.schema import PatchResult, PhaseRecord
from kernel_forge.policy.verdict import WarnReason

logger = logging.getLogger(__name__)

APPLIED = "APPLIED"
SKIPPED_CONFLICT = "SKIPPED_CONFLICT"
APPLY_FAILED = "APPLY_FAILED"
UNAVAILABLE = "UNAVAILABLE"


def _patch_args(path: str, dry_run: bool) -> List[str]:
    args = ["patch", "-p1", "-N", "--batch"]
    if dry_run:
        args.append("--dry-run")
    return args + ["-i", path]


def apply_patches(
    env: Environment,
    patches: List[PatchResult],
    runner: ToolRunner,
    rec: PhaseRecord,
) -> List[PatchResult]:
    """Apply *patches* in order, updating each record's status in place."""
    logger.info("Applying patches to %s...", env.kernel_dir)

    for p in patches:
        if not p.available or p.path is None:
            p.status = UNAVAILABLE
            logger.info("  %s unavailable, skipping", p.name)
            continue

        logger.info("  Applying %s...", p.name)
        dry = runner.run(_patch_args(p.path, dry_run=True), cwd=env.kernel_dir)
        if not dry.ok:
            p.status = SKIPPED_CONFLICT
            msg = f"Patch {p.name} may already be applied or conflicts - skipping"
            logger.warning("  %s", msg)
            rec.warn(WarnReason.PATCH_SKIPPED_CONFLICT, msg)
            continue

        real = runner.run(_patch_args(p.path, dry_run=False), cwd=env.kernel_dir)
        if not real.ok:
            p.status = APPLY_FAILED
            msg = f"Failed to apply {p.name}: {real.tail(3)}"
            logger.warning("  %s", msg)
            rec.warn(WarnReason.PATCH_APPLY_FAILED, msg)
            continue

        p.status = APPLIED

    applied = sum(1 for p in patches if p.status == APPLIED)
    rec.details["applied"] = applied
    rec.details["total"] = len(patches)
    logger.info("Patches applied: %d/%d", applied, len(patches))
    return patches
