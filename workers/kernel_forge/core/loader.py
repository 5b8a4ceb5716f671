"""
Loader image — regenerate the initramfs for the new kernel.

Generator chain: dracut, then mkinitcpio.  Exhaustion is fatal, since
the new kernel cannot boot without a loader image.  The image is built
under a temporary name, promoted, and the version-neutral ``initramfs``
link repointed.
"""
import logging
import os
from pathlib import Path
from typing import List

from kernel_forge.core.deploy import replace_symlink
from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import CapabilityChain, ChainExhausted, CommandResult, Provider, ToolRunner
from kernel_forge.io.schema import PhaseRecord
from kernel_forge.policy.profile import BuildProfile
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason

logger = logging.getLogger(__name__)

GENERATORS = (
    Provider("dracut", "dracut"),
    Provider("mkinitcpio", "mkinitcpio"),
)


def _generator_args(
    provider: Provider,
    env: Environment,
    drivers: List[str],
    out: Path,
) -> List[str]:
    full = env.version.full
    if provider.name == "dracut":
        args = ["dracut", "--force", "--kver", full]
        if drivers:
            args += ["--add-drivers", " ".join(drivers)]
        if not env.is_real_root:
            args += ["--kmoddir", str(env.new_modules_dir)]
        return args + [str(out)]

    args = ["mkinitcpio", "-k", full, "-g", str(out)]
    if not env.is_real_root:
        args += ["-r", str(env.root)]
    return args


def regenerate(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    rec: PhaseRecord,
) -> str:
    """Generate ``initramfs-<full>.img``; return the generator used."""
    logger.info("Generating initramfs...")
    target = env.loader_image()
    staging = target.with_name(f".{target.name}.tmp")
    staging.unlink(missing_ok=True)
    drivers = list(profile.loader_extra_drivers)

    def invoke(provider: Provider) -> CommandResult:
        return runner.run(_generator_args(provider, env, drivers, staging))

    chain = CapabilityChain("initramfs generation", GENERATORS, runner)
    try:
        outcome = chain.run(invoke)
    except ChainExhausted as e:
        staging.unlink(missing_ok=True)
        if not e.any_available:
            raise FatalPhaseError(
                FatalReason.LOADER_UNAVAILABLE,
                "No initramfs generator found (dracut or mkinitcpio)",
                hint="Install dracut",
            ) from e
        raise FatalPhaseError(FatalReason.LOADER_UNAVAILABLE, str(e)) from e

    if not staging.is_file():
        raise FatalPhaseError(
            FatalReason.LOADER_UNAVAILABLE,
            f"{outcome.provider.name} reported success but wrote no image",
        )
    os.replace(staging, target)
    replace_symlink(env.boot_dir / "initramfs", target.name)

    rec.details["generator"] = outcome.provider.name
    logger.info("Initramfs generated with %s", outcome.provider.name)
    return outcome.provider.name
