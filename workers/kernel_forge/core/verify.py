"""
Verify + advisory cleanup — diagnostics after install.

Neither phase changes installed state: missing files are reported, and
old kernels are only listed, never removed.
"""
import logging
from typing import List

from kernel_forge.core.environment import Environment
from kernel_forge.core.modules import aux_module_present
from kernel_forge.io.schema import PhaseRecord, VerifyResult
from kernel_forge.policy.profile import BuildProfile
from kernel_forge.policy.verdict import WarnReason

logger = logging.getLogger(__name__)


def verify_install(env: Environment, profile: BuildProfile, rec: PhaseRecord) -> VerifyResult:
    logger.info("Verifying installation...")
    result = VerifyResult(
        image=env.boot_file("vmlinuz").is_file(),
        loader_image=env.loader_image().is_file(),
        modules_dir=env.new_modules_dir.is_dir(),
        aux_module=bool(profile.aux_module) and aux_module_present(env, profile.aux_module),
    )

    for ok, label in (
        (result.image, "Kernel image"),
        (result.loader_image, "Initramfs"),
        (result.modules_dir, "Modules directory"),
    ):
        if not ok:
            msg = f"{label} not found"
            logger.warning("  %s", msg)
            rec.warn(WarnReason.VERIFY_MISSING, msg)

    if profile.aux_module and not result.aux_module:
        logger.warning("  %s modules not found - may need manual DKMS rebuild", profile.aux_module)

    if result.errors == 0:
        logger.info("Installation verified successfully")
    else:
        logger.warning("Installation completed with %d warnings", result.errors)
    return result


def other_installed(env: Environment) -> List[str]:
    """Releases of every other ``vmlinuz-*`` in the boot area."""
    current = f"vmlinuz-{env.version.full}"
    return sorted(
        p.name[len("vmlinuz-"):]
        for p in env.boot_dir.glob("vmlinuz-*")
        if p.name != current
    )


def advise_cleanup(env: Environment, threshold: int, rec: PhaseRecord) -> List[str]:
    logger.info("Checking for old kernels to clean up...")
    others = other_installed(env)
    if len(others) > threshold:
        msg = (
            f"Found {len(others)} other kernel versions in {env.boot_dir}: "
            f"{', '.join(others)}. Consider cleaning up old kernels manually"
        )
        logger.warning("  %s", msg)
        rec.warn(WarnReason.CLEANUP_ADVISED, msg)
    return others
