"""
Kernel modules — auxiliary (DKMS) module rebuild and the module index.

Auxiliary rebuild chain, in order:
  1. managed   ``dkms install <module>/<version> -k <release>``
               (needs a known module version)
  2. broad     ``dkms autoinstall -k <release>``

Every failure here is a warning: the new kernel boots without the
auxiliary module.

Under an install root other than ``/`` the rebuild calls are pointed at
that root; ``dkms status`` still reads the host registry.
"""
import logging
import re
from typing import List, Optional

from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import CapabilityChain, ChainExhausted, CommandResult, Provider, ToolRunner
from kernel_forge.io.schema import PhaseRecord
from kernel_forge.policy.profile import BuildProfile
from kernel_forge.policy.verdict import WarnReason

logger = logging.getLogger(__name__)

_PKG_VERSION_RE = re.compile(r"[0-9]+\.[0-9.]+")


def discover_aux_version(profile: BuildProfile, runner: ToolRunner) -> Optional[str]:
    """Module version from ``dkms status``, else from the package manager."""
    module = profile.aux_module
    status = runner.run(["dkms", "status"])
    if status.ok:
        m = re.search(rf"{re.escape(module)}/([0-9.]+)", status.stdout)
        if m:
            return m.group(1)

    query = profile.aux_package_query
    if query and runner.available(query[0]):
        result = runner.run(list(query))
        if result.ok:
            for line in result.stdout.splitlines():
                if "pkgver" not in line:
                    continue
                m = _PKG_VERSION_RE.search(line)
                if m:
                    return m.group(0)
    return None


def dkms_args(env: Environment, *args: str) -> List[str]:
    """``dkms <args>``, re-rooted under a sandboxed install root."""
    argv = ["dkms", *args]
    if not env.is_real_root:
        argv += [
            "--dkmstree", str(env.root / "var" / "lib" / "dkms"),
            "--installtree", str(env.root / "lib" / "modules"),
            "--kernelsourcedir", str(env.kernel_dir),
        ]
    return argv


def aux_module_present(env: Environment, module: str) -> bool:
    """True if any ``<module>*.ko*`` exists under the new module tree."""
    if not env.new_modules_dir.is_dir():
        return False
    return any(env.new_modules_dir.rglob(f"{module}*.ko*"))


def rebuild_aux(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    rec: PhaseRecord,
) -> Optional[str]:
    """Rebuild the auxiliary module; return the provider that succeeded."""
    module = profile.aux_module
    full = env.version.full
    logger.info("Running DKMS for kernel %s...", full)

    if not runner.available("dkms"):
        msg = f"DKMS not installed; {module} driver may not work. {profile.aux_install_hint}"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.AUX_TOOL_MISSING, msg)
        return None

    version = discover_aux_version(profile, runner)
    if version is None:
        msg = f"{profile.aux_package or module} version unknown, falling back to autoinstall"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.AUX_VERSION_UNKNOWN, msg)
    else:
        logger.info("Found %s DKMS version: %s", module, version)
        rec.details["aux_version"] = version
        # Clean rebuild; absence of a previous build is fine.
        runner.run(dkms_args(env, "remove", f"{module}/{version}", "-k", full))

    def invoke(provider: Provider) -> CommandResult:
        if provider.name == "dkms install":
            logger.info("Building %s/%s for %s (this may take a few minutes)...", module, version, full)
            return runner.run(dkms_args(env, "install", f"{module}/{version}", "-k", full))
        return runner.run(dkms_args(env, "autoinstall", "-k", full))

    chain = CapabilityChain(
        "auxiliary module rebuild",
        [
            Provider("dkms install", "dkms", enabled=version is not None),
            Provider("dkms autoinstall", "dkms"),
        ],
        runner,
    )
    provider_name = None
    try:
        outcome = chain.run(invoke)
        provider_name = outcome.provider.name
        rec.details["aux_provider"] = provider_name
        logger.info("%s DKMS module built and installed", module)
    except ChainExhausted as e:
        msg = f"{e}; may need manual intervention"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.AUX_BUILD_FAILED, msg)

    if not aux_module_present(env, module):
        msg = f"{module} module not found for {full} after DKMS - check: dkms status"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.AUX_MODULE_MISSING, msg)
    return provider_name


def refresh_module_index(env: Environment, runner: ToolRunner, rec: PhaseRecord) -> bool:
    """``depmod -a [-b <root>] <release>``; failure is a warning."""
    full = env.version.full
    logger.info("Running depmod for %s...", full)
    args = ["depmod", "-a"]
    if not env.is_real_root:
        args += ["-b", str(env.root)]
    args.append(full)

    result = runner.run(args)
    if not result.ok:
        msg = f"depmod failed (rc={result.returncode}): {result.tail(3)}"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.DEPMOD_FAILED, msg)
        return False
    logger.info("Module dependencies updated")
    return True
