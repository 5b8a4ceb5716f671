"""
Deploy — PRECHECK and DEPLOY phases of install.

PRECHECK fails closed: the build receipt must exist, name the same full
version as this invocation, and the image / symbol map / config it
describes must still be present.

DEPLOY installs modules, then copies each boot file under its
version-qualified name through a temporary sibling.  Every copy is
hashed and compared (against the receipt digest where one exists,
otherwise against the source) before it is renamed into place.  The
version-neutral links are repointed only after all copies verified, each
with an atomic symlink swap.  Files of other versions are never touched.
"""
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from kernel_forge.core.elf import hash_file
from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import ToolRunner
from kernel_forge.io.schema import CompiledArtifact, PhaseRecord
from kernel_forge.io.writer import read_model
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason, WarnReason

logger = logging.getLogger(__name__)

BUILD_HINT = "Run: kernel-forge build"

# Version-neutral links; each points at <stem>-<full>.
LINKED_STEMS = ("vmlinuz", "System.map", "config")


# ═══════════════════════════════════════════════════════════════════════════════
# PRECHECK
# ═══════════════════════════════════════════════════════════════════════════════

def precheck(env: Environment, rec: PhaseRecord) -> CompiledArtifact:
    if not env.kernel_dir.is_dir():
        raise FatalPhaseError(
            FatalReason.BUILD_INCOMPLETE,
            f"Kernel build directory not found: {env.kernel_dir}",
            hint=BUILD_HINT,
        )

    artifact = read_model(CompiledArtifact, env.receipt_path)
    if artifact is None:
        raise FatalPhaseError(
            FatalReason.BUILD_INCOMPLETE,
            f"No build receipt at {env.receipt_path}; the last compile did not finish",
            hint=BUILD_HINT,
        )

    if artifact.version != env.version.full:
        raise FatalPhaseError(
            FatalReason.VERSION_MISMATCH,
            f"Build receipt is for {artifact.version}, install expects {env.version.full}",
            hint="Check KERNEL_* and LOCAL_VERSION settings match the build",
        )
    if env.release_file.is_file():
        recorded = env.release_file.read_text().strip()
        if recorded != env.version.full:
            raise FatalPhaseError(
                FatalReason.VERSION_MISMATCH,
                f"Tree was built as {recorded}, install expects {env.version.full}",
                hint="Check CONFIG_LOCALVERSION and rebuild",
            )

    for label, path in (
        ("Kernel image", env.image_path),
        ("System.map", env.system_map_path),
        ("Kernel config", env.config_path),
    ):
        if not path.is_file():
            raise FatalPhaseError(
                FatalReason.BUILD_INCOMPLETE,
                f"{label} not found at {path}; kernel build may be incomplete",
                hint=BUILD_HINT,
            )

    if env.running_release == env.version.full:
        msg = f"Reinstalling the running kernel {env.version.full}; its boot files will be replaced"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.REINSTALL_RUNNING, msg)

    logger.info("Build verification passed")
    return artifact


# ═══════════════════════════════════════════════════════════════════════════════
# File primitives
# ═══════════════════════════════════════════════════════════════════════════════

def _staging(path: Path) -> Path:
    return path.with_name(f".{path.name}.tmp")


def install_file(src: Path, dest: Path, expected_sha256: Optional[str] = None) -> str:
    """
    Copy *src* to *dest* via a verified temporary sibling.

    Raises FatalPhaseError(INTEGRITY_MISMATCH) when the staged copy does not
    hash to *expected_sha256* (or to *src* when no digest is given); *dest*
    is left untouched in that case.
    """
    expected = expected_sha256 or hash_file(src)
    staging = _staging(dest)
    try:
        with open(src, "rb") as fin, open(staging, "wb") as fout:
            shutil.copyfileobj(fin, fout)
            fout.flush()
            os.fsync(fout.fileno())
        shutil.copymode(src, staging)
    except BaseException:
        staging.unlink(missing_ok=True)
        raise

    actual = hash_file(staging)
    if actual != expected:
        staging.unlink(missing_ok=True)
        raise FatalPhaseError(
            FatalReason.INTEGRITY_MISMATCH,
            f"{dest.name}: copied content {actual[:12]} does not match expected {expected[:12]}",
            hint=BUILD_HINT,
        )
    os.replace(staging, dest)
    return actual


def replace_symlink(link: Path, target: str) -> None:
    """Point *link* at *target* (relative name) with an atomic rename."""
    staging = _staging(link)
    if staging.is_symlink() or staging.exists():
        staging.unlink()
    os.symlink(target, staging)
    os.replace(staging, link)


def _preserve_plain_file(link: Path, preserved: Path) -> Optional[Path]:
    """
    Keep a regular file sitting at a version-neutral name.

    Moved under the running kernel's version-qualified name when that name
    is free, so the active kernel stays present and selectable.
    """
    if link.is_symlink() or not link.is_file():
        return None
    if preserved.exists():
        return None
    os.replace(link, preserved)
    logger.info("  Preserved %s as %s", link.name, preserved.name)
    return preserved


# ═══════════════════════════════════════════════════════════════════════════════
# DEPLOY
# ═══════════════════════════════════════════════════════════════════════════════

def install_modules(env: Environment, runner: ToolRunner) -> None:
    args = ["make", *env.make_vars, "modules_install"]
    if not env.is_real_root:
        args.append(f"INSTALL_MOD_PATH={env.root}")
    logger.info("Installing kernel modules...")
    result = runner.run(args, cwd=env.kernel_dir)
    if not result.ok:
        raise FatalPhaseError(
            FatalReason.DEPLOY_FAILED,
            f"Failed to install modules: {result.tail(5)}",
        )


def deploy(
    env: Environment,
    artifact: CompiledArtifact,
    runner: ToolRunner,
    rec: PhaseRecord,
) -> List[str]:
    """Install modules and boot files; return the installed file names."""
    install_modules(env, runner)

    logger.info("Installing kernel image...")
    env.boot_dir.mkdir(parents=True, exist_ok=True)
    plan: List[Tuple[Path, str, Optional[str]]] = [
        (env.image_path, "vmlinuz", artifact.image_sha256),
        (env.system_map_path, "System.map", None),
        (env.config_path, "config", artifact.config_sha256),
    ]
    installed: List[str] = []
    try:
        for src, stem, digest in plan:
            dest = env.boot_file(stem)
            install_file(src, dest, digest)
            installed.append(dest.name)

        for stem in LINKED_STEMS:
            link = env.boot_dir / stem
            _preserve_plain_file(link, env.boot_file(stem, env.running_release))
            replace_symlink(link, env.boot_file(stem).name)
    except OSError as e:
        raise FatalPhaseError(FatalReason.DEPLOY_FAILED, f"Failed to install boot files: {e}") from e

    rec.details["installed"] = installed
    logger.info("Kernel installed to %s", env.boot_dir)
    return installed
