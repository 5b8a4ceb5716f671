"""
Compiler driver — run the toolchain over the configured tree.

Profile inputs are optional and additive:
  converted profile present        → CLANG_AUTOFDO_PROFILE=<path>
  <prefix>_cc_profile.txt present  → CLANG_PROPELLER_PROFILE_PREFIX=<prefix>

Neither present is a plain (non-profile-guided) build.  The receipt from a
previous compile is deleted first and only rewritten after both make
passes succeed, so a failed compile never leaves a promotable artifact.
"""
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from elftools.common.exceptions import ELFError

from kernel_forge.core.elf import hash_file, read_build_id
from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import ToolRunner
from kernel_forge.io.schema import CompiledArtifact, PhaseRecord
from kernel_forge.io.writer import write_model
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason, WarnReason

logger = logging.getLogger(__name__)


def profile_inputs(env: Environment) -> Tuple[Optional[Path], Optional[Path]]:
    """(converted profile, layout profile prefix); each None when absent."""
    autofdo = env.autofdo_profile if env.autofdo_profile.is_file() else None
    propeller = env.propeller_prefix if env.propeller_marker.is_file() else None
    return autofdo, propeller


def make_args(env: Environment, target: Optional[str] = None) -> List[str]:
    autofdo, propeller = profile_inputs(env)
    args = ["make", *env.make_vars, f"-j{env.make_jobs}"]
    if autofdo is not None:
        args.append(f"CLANG_AUTOFDO_PROFILE={autofdo}")
    if propeller is not None:
        args.append(f"CLANG_PROPELLER_PROFILE_PREFIX={propeller}")
    if target:
        args.append(target)
    return args


def compile_kernel(env: Environment, runner: ToolRunner, rec: PhaseRecord) -> CompiledArtifact:
    """Build image + modules and write ``build_receipt.json``."""
    env.receipt_path.unlink(missing_ok=True)

    autofdo, propeller = profile_inputs(env)
    if autofdo is not None:
        logger.info("Using AutoFDO profile: %s", autofdo)
    else:
        logger.info("No profile data found, building without profile guidance")
    if propeller is not None:
        logger.info("Using Propeller profile prefix: %s", propeller)

    logger.info("Building kernel with %d jobs...", env.make_jobs)
    for target in (None, "modules"):
        args = make_args(env, target)
        result = runner.run(args, cwd=env.kernel_dir, capture=False)
        if not result.ok:
            raise FatalPhaseError(
                FatalReason.COMPILE_FAILED,
                f"'{' '.join(args)}' failed with exit code {result.returncode}",
            )

    for required in (env.image_path, env.system_map_path, env.config_path):
        if not required.is_file():
            raise FatalPhaseError(
                FatalReason.COMPILE_FAILED,
                f"Toolchain reported success but {required} is missing",
            )

    build_id = None
    if env.vmlinux_path.is_file():
        try:
            build_id = read_build_id(env.vmlinux_path)
        except (ELFError, OSError) as e:
            msg = f"{env.vmlinux_path} is not a valid ELF file: {e}"
            logger.warning("  %s", msg)
            rec.warn(WarnReason.BINARY_NOT_ELF, msg)

    artifact = CompiledArtifact(
        version=env.version.full,
        tree_path=str(env.kernel_dir),
        image_path=str(env.image_path),
        image_sha256=hash_file(env.image_path),
        system_map_path=str(env.system_map_path),
        config_path=str(env.config_path),
        config_sha256=hash_file(env.config_path),
        vmlinux_build_id=build_id,
        autofdo_profile=str(autofdo) if autofdo else None,
        propeller_prefix=str(propeller) if propeller else None,
    )
    write_model(artifact, env.receipt_path)

    rec.details["profile_guided"] = artifact.profile_guided
    logger.info("Kernel build complete: %s", env.image_path)
    return artifact
