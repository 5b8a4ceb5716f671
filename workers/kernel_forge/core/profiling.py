"""
Profile loop — sample a running kernel and convert the samples into
compiler-consumable profile data.

State machine::

    COLLECT  → perf.data            (fatal if the sampler cannot attach)
    CONVERT  → autofdo.profdata     (converter chain; fatal if exhausted)
             → propeller_*          (opportunistic, warning on failure)
    REBUILD  requires autofdo.profdata; runs CONVERT first when only
             perf.data exists, fails fast when neither exists.

The recording and the converted profile are written to temporary names
and promoted with ``os.replace`` so a killed run never leaves a
truncated file under the final name.
"""
import logging
import os
import time
from pathlib import Path
from typing import List, Tuple

from kernel_forge.core.elf import is_elf
from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import CapabilityChain, ChainExhausted, CommandResult, Provider, ToolRunner
from kernel_forge.io.schema import PhaseRecord
from kernel_forge.policy.profile import BuildProfile
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason, WarnReason

logger = logging.getLogger(__name__)

COLLECT_HINT = "Run: kernel-forge profile collect"

# Sampling is the one bounded phase; perf gets this much slack past the window.
SAMPLER_GRACE_SECONDS = 60

CONVERTERS = (
    Provider("create_llvm_prof", "create_llvm_prof"),
    Provider("llvm-profgen", "llvm-profgen"),
)


def _staging(path: Path) -> Path:
    return path.with_name(f".{path.name}.tmp")


# ═══════════════════════════════════════════════════════════════════════════════
# COLLECT
# ═══════════════════════════════════════════════════════════════════════════════

def collect(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    rec: PhaseRecord,
    duration: int,
) -> Path:
    """Record system-wide branch samples for *duration* seconds."""
    if not runner.available("perf"):
        raise FatalPhaseError(
            FatalReason.SAMPLER_UNAVAILABLE,
            "perf not found",
            hint="Install: sudo xbps-install -S perf",
        )

    env.profile_dir.mkdir(parents=True, exist_ok=True)
    logger.info("=== Profile collection: %d seconds ===", duration)
    logger.info(">>> Start your workload now; recording kernel activity for %ds <<<", duration)
    if profile.sampler_start_delay > 0:
        time.sleep(profile.sampler_start_delay)

    staging = _staging(env.perf_data)
    staging.unlink(missing_ok=True)
    args = [
        "perf", "record", "-a",
        "-e", profile.sampler_event,
        "-b", "-o", str(staging),
        "--", "sleep", str(duration),
    ]
    logger.info("Recording kernel perf data...")
    result = runner.run(args, timeout=duration + SAMPLER_GRACE_SECONDS)
    if not result.ok or not staging.is_file():
        staging.unlink(missing_ok=True)
        raise FatalPhaseError(
            FatalReason.SAMPLER_FAILED,
            f"perf record failed (rc={result.returncode}): {result.tail(5)}",
        )

    os.replace(staging, env.perf_data)
    size = env.perf_data.stat().st_size
    rec.details["recording_bytes"] = size
    logger.info("Profile collected: %s (%d bytes)", env.perf_data, size)
    return env.perf_data


# ═══════════════════════════════════════════════════════════════════════════════
# Profiled binary
# ═══════════════════════════════════════════════════════════════════════════════

def expected_binary(env: Environment) -> Path:
    """``<build_dir>/linux-<running release without local suffix>/vmlinux``."""
    release = env.running_release
    local = env.version.local
    if local and release.endswith(local):
        release = release[: -len(local)]
    return env.build_dir / f"linux-{release}" / "vmlinux"


def locate_profiled_binary(env: Environment, rec: PhaseRecord) -> Path:
    """
    Find the uncompressed kernel matching the running system.

    The deterministic path wins.  Otherwise the build area is searched for
    ELF ``*/vmlinux`` files: exactly one is accepted with a warning, more
    than one is an ambiguity and none is missing; both are fatal.
    """
    expected = expected_binary(env)
    if expected.is_file() and is_elf(expected):
        return expected

    candidates: List[Path] = sorted(
        p for p in env.build_dir.glob("*/vmlinux") if p.is_file() and is_elf(p)
    )
    if not candidates:
        raise FatalPhaseError(
            FatalReason.PROFILED_BINARY_MISSING,
            f"No vmlinux for the running kernel ({env.running_release}); expected {expected}",
            hint="Build and install the kernel before profiling",
        )
    if len(candidates) > 1:
        raise FatalPhaseError(
            FatalReason.PROFILED_BINARY_AMBIGUOUS,
            f"{expected} not found and several builds exist: "
            + ", ".join(str(c) for c in candidates),
            hint="Remove stale build trees or rebuild the running version",
        )

    msg = f"{expected} not found, using {candidates[0]}"
    logger.warning("  %s", msg)
    rec.warn(WarnReason.PROFILED_BINARY_FALLBACK, msg)
    return candidates[0]


# ═══════════════════════════════════════════════════════════════════════════════
# CONVERT
# ═══════════════════════════════════════════════════════════════════════════════

def _converter_args(provider: Provider, binary: Path, recording: Path, out: Path) -> List[str]:
    if provider.name == "create_llvm_prof":
        return [
            "create_llvm_prof",
            f"--binary={binary}",
            f"--profile={recording}",
            f"--out={out}",
            "--format=extbinary",
        ]
    return [
        "llvm-profgen",
        f"--binary={binary}",
        f"--perfdata={recording}",
        f"--output={out}",
    ]


def convert(
    env: Environment,
    runner: ToolRunner,
    rec: PhaseRecord,
) -> Tuple[str, Path, Path]:
    """
    Turn the raw recording into a converted profile.

    Returns (converter name, profiled binary, converted profile path).
    """
    if not env.perf_data.is_file():
        raise FatalPhaseError(
            FatalReason.RECORDING_MISSING,
            f"No sample recording at {env.perf_data}",
            hint=COLLECT_HINT,
        )

    binary = locate_profiled_binary(env, rec)
    logger.info("Converting to AutoFDO profile using %s...", binary)

    staging = _staging(env.autofdo_profile)
    staging.unlink(missing_ok=True)

    def invoke(provider: Provider) -> CommandResult:
        return runner.run(_converter_args(provider, binary, env.perf_data, staging))

    chain = CapabilityChain("profile conversion", CONVERTERS, runner)
    try:
        outcome = chain.run(invoke)
    except ChainExhausted as e:
        staging.unlink(missing_ok=True)
        if not e.any_available:
            raise FatalPhaseError(
                FatalReason.NO_CONVERTER,
                "Neither create_llvm_prof nor llvm-profgen found",
                hint="Install autofdo (create_llvm_prof) or LLVM (llvm-profgen)",
            ) from e
        raise FatalPhaseError(FatalReason.NO_CONVERTER, str(e)) from e

    if not staging.is_file():
        raise FatalPhaseError(
            FatalReason.NO_CONVERTER,
            f"{outcome.provider.name} reported success but wrote no profile",
        )
    os.replace(staging, env.autofdo_profile)
    rec.details["converter"] = outcome.provider.name
    logger.info("AutoFDO profile ready: %s", env.autofdo_profile)

    convert_layout(env, runner, rec, binary)
    return outcome.provider.name, binary, env.autofdo_profile


def convert_layout(env: Environment, runner: ToolRunner, rec: PhaseRecord, binary: Path) -> bool:
    """Opportunistic layout-partitioned profile; failure is only a warning."""
    if not runner.available("create_llvm_prof"):
        logger.info("create_llvm_prof not available, skipping Propeller profile")
        return False

    logger.info("Generating Propeller profiles...")
    result = runner.run([
        "create_llvm_prof",
        f"--binary={binary}",
        f"--profile={env.perf_data}",
        f"--out={env.propeller_prefix}",
        "--format=propeller",
    ])
    if result.ok and env.propeller_marker.is_file():
        rec.details["layout_profile"] = str(env.propeller_prefix)
        logger.info("Propeller profiles ready")
        return True

    # A stale marker would pair an old layout with the new profile.
    for stale in env.profile_dir.glob(f"{env.propeller_prefix.name}_*_profile.txt"):
        stale.unlink()
    msg = f"Propeller profile generation failed (optional): {result.tail(3)}"
    logger.warning("  %s", msg)
    rec.warn(WarnReason.LAYOUT_PROFILE_FAILED, msg)
    return False


# ═══════════════════════════════════════════════════════════════════════════════
# REBUILD precondition
# ═══════════════════════════════════════════════════════════════════════════════

def rebuild_needs_convert(env: Environment) -> bool:
    """
    Decide what REBUILD must do before compiling.

    False: converted profile exists.  True: only the raw recording
    exists, convert first.  Raises when neither exists.
    """
    if env.autofdo_profile.is_file():
        return False
    if env.perf_data.is_file():
        return True
    raise FatalPhaseError(
        FatalReason.PROFILE_MISSING,
        f"No AutoFDO profile found at {env.autofdo_profile}; run collect first",
        hint=COLLECT_HINT,
    )
