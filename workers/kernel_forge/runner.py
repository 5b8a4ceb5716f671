"""
kernel_forge runner — top-level orchestration for the three operator verbs.

  build    fetch → patch → configure → compile
  install  precheck → backup → deploy → aux rebuild → loader → boot entry
           → module index → verify → advisory cleanup
  profile  collect / convert / rebuild / all

Each phase runs inside ``track`` which times it, records its status in
the verb's report and marks it FAILED when a FatalPhaseError escapes.
The report is written under ``<BUILD_DIR>/reports/`` whether the verb
succeeds or not.
"""
import argparse
import logging
import os
import shutil
import sys
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Union

import httpx
from pydantic import ValidationError

from kernel_forge import __version__
from kernel_forge.config import Settings
from kernel_forge.core import profiling
from kernel_forge.core.backup import snapshot_active
from kernel_forge.core.bootloader import update_boot_entry
from kernel_forge.core.compiler import compile_kernel
from kernel_forge.core.deploy import deploy, precheck
from kernel_forge.core.environment import Environment
from kernel_forge.core.fetcher import fetch_patches, fetch_source
from kernel_forge.core.kconfig import configure
from kernel_forge.core.loader import regenerate
from kernel_forge.core.modules import rebuild_aux, refresh_module_index
from kernel_forge.core.patches import apply_patches
from kernel_forge.core.tools import ToolRunner
from kernel_forge.core.verify import advise_cleanup, verify_install
from kernel_forge.io.schema import (
    BuildReport,
    Finding,
    InstallReport,
    PhaseRecord,
    ProfileReport,
    now_iso,
)
from kernel_forge.io.writer import write_report
from kernel_forge.policy.profile import BuildProfile
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason, PhaseStatus, Severity, WarnReason

logger = logging.getLogger(__name__)

Report = Union[BuildReport, InstallReport, ProfileReport]

PROFILES: Dict[str, Callable[[], BuildProfile]] = {
    "voltdev": BuildProfile.voltdev,
}

PROFILE_ACTIONS = ("collect", "convert", "rebuild", "all")


def resolve_profile(name: str) -> BuildProfile:
    try:
        return PROFILES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown build profile {name!r}; known: {', '.join(sorted(PROFILES))}"
        ) from None


# ── Phase bookkeeping ────────────────────────────────────────────────────────

@contextmanager
def track(report: Report, name: str) -> Iterator[PhaseRecord]:
    rec = PhaseRecord(name=name)
    report.phases.append(rec)
    logger.info("── %s ──", name)
    t0 = time.monotonic()
    try:
        yield rec
    except FatalPhaseError as e:
        rec.status = PhaseStatus.FAILED
        rec.findings.append(Finding(reason=e.reason.value, message=e.message, severity=Severity.FATAL))
        raise
    finally:
        rec.duration_ms = int((time.monotonic() - t0) * 1000)


def skip(report: Report, name: str, why: str) -> PhaseRecord:
    rec = PhaseRecord(name=name, status=PhaseStatus.SKIPPED, details={"reason": why})
    report.phases.append(rec)
    logger.info("── %s ── skipped (%s)", name, why)
    return rec


def _finish(report: Report, env: Environment, kind: str, failed: bool) -> None:
    report.finished_at = now_iso()
    report.status = "FAILED" if failed else "SUCCESS"
    path = write_report(report, env.reports_dir, kind, env.version.full)
    logger.info("%s report written to %s", kind.capitalize(), path)


def check_dependencies(profile: BuildProfile, runner: ToolRunner, rec: PhaseRecord) -> List[str]:
    """Missing toolchain binaries; advice only."""
    missing = [name for name in profile.build_dependencies if not runner.available(name)]
    if missing:
        msg = f"Missing build tools: {' '.join(missing)}"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.DEPENDENCY_MISSING, msg)
    else:
        logger.info("All build dependencies satisfied")
    rec.details["missing"] = missing
    return missing


# ═══════════════════════════════════════════════════════════════════════════════
# build
# ═══════════════════════════════════════════════════════════════════════════════

def run_build(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    client: httpx.Client,
    clean: bool = False,
    config_only: bool = False,
) -> BuildReport:
    """
    Fetch, patch, configure and compile one kernel version.

    Raises FatalPhaseError when a phase leaves the next one without input;
    the build report is written either way.
    """
    report = BuildReport(version=env.version.full, profile_id=profile.profile_id)
    logger.info("Kernel: %s  profile: %s", env.version.full, profile.profile_id)
    failed = True
    try:
        with track(report, "dependencies") as rec:
            check_dependencies(profile, runner, rec)

        if clean:
            with track(report, "clean") as rec:
                for path in (env.kernel_dir, env.patches_dir):
                    if path.exists():
                        logger.info("Removing %s", path)
                        shutil.rmtree(path)
                rec.details["removed"] = [str(env.kernel_dir), str(env.patches_dir)]

        with track(report, "fetch") as rec:
            report.fetch = fetch_source(env, client)
            logger.info("Downloading CachyOS patches for %s...", env.version.base)
            patches = fetch_patches(env, client, profile.patches, rec)
            reference = fetch_patches(env, client, profile.reference_patches, rec, reference=True)
            report.patches = patches + reference

        with track(report, "patch") as rec:
            apply_patches(env, patches, runner, rec)

        with track(report, "configure") as rec:
            source, directives, _ = configure(env, profile, runner, rec)
            report.base_config_source = source
            report.directives = directives

        if config_only:
            skip(report, "compile", "config-only requested")
        else:
            with track(report, "compile") as rec:
                report.artifact = compile_kernel(env, runner, rec)
        failed = False
    finally:
        _finish(report, env, "build", failed)
    return report


# ═══════════════════════════════════════════════════════════════════════════════
# install
# ═══════════════════════════════════════════════════════════════════════════════

def require_root(env: Environment) -> None:
    if env.is_real_root and os.geteuid() != 0:
        raise FatalPhaseError(
            FatalReason.NOT_ROOT,
            "Installing into / must be run as root",
            hint="Use sudo",
        )


def run_install(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    backup: bool = True,
    aux: bool = True,
    cleanup_threshold: int = 2,
) -> InstallReport:
    """
    Deploy the compiled kernel into the (possibly re-rooted) live host.

    The previous kernel's files are never modified or removed; only new
    version-qualified files, the neutral links and the boot default change.
    """
    report = InstallReport(version=env.version.full)
    logger.info("Installing kernel %s into %s", env.version.full, env.root)
    failed = True
    try:
        with track(report, "precheck") as rec:
            require_root(env)
            artifact = precheck(env, rec)

        if backup:
            with track(report, "backup") as rec:
                report.backup = snapshot_active(env, rec)
        else:
            skip(report, "backup", "--no-backup")

        with track(report, "deploy") as rec:
            deploy(env, artifact, runner, rec)

        if not aux:
            skip(report, "aux_rebuild", "--skip-dkms")
        elif not profile.aux_module:
            skip(report, "aux_rebuild", "profile has no auxiliary module")
        else:
            with track(report, "aux_rebuild") as rec:
                rebuild_aux(env, profile, runner, rec)

        with track(report, "loader") as rec:
            regenerate(env, profile, runner, rec)

        with track(report, "boot_entry") as rec:
            report.boot_entry = update_boot_entry(env, profile, runner, rec)

        with track(report, "module_index") as rec:
            refresh_module_index(env, runner, rec)

        with track(report, "verify") as rec:
            report.verify = verify_install(env, profile, rec)

        with track(report, "cleanup") as rec:
            report.other_installed = advise_cleanup(env, cleanup_threshold, rec)
        failed = False
    finally:
        _finish(report, env, "install", failed)
    return report


# ═══════════════════════════════════════════════════════════════════════════════
# profile
# ═══════════════════════════════════════════════════════════════════════════════

def _convert_phase(report: ProfileReport, env: Environment, runner: ToolRunner) -> None:
    with track(report, "convert") as rec:
        converter, binary, converted = profiling.convert(env, runner, rec)
        report.converter = converter
        report.profiled_binary = str(binary)
        report.converted_profile = str(converted)
        report.layout_profile = rec.details.get("layout_profile")


def run_profile(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    action: str,
    duration: int,
    client: Optional[httpx.Client] = None,
) -> ProfileReport:
    """
    Drive the profile loop.

    ``collect`` = COLLECT + CONVERT, ``convert`` = CONVERT,
    ``rebuild`` = [CONVERT] + build, ``all`` = all three.
    """
    if action not in PROFILE_ACTIONS:
        raise ValueError(f"Unknown profile action {action!r}")

    report = ProfileReport(version=env.version.full)
    failed = True
    try:
        if action in ("collect", "all"):
            with track(report, "collect") as rec:
                report.recording = str(profiling.collect(env, profile, runner, rec, duration))
            _convert_phase(report, env, runner)
        elif action == "convert":
            _convert_phase(report, env, runner)

        if action in ("rebuild", "all"):
            with track(report, "rebuild_precondition"):
                needs_convert = profiling.rebuild_needs_convert(env)
            if needs_convert:
                _convert_phase(report, env, runner)
            with track(report, "rebuild") as rec:
                logger.info("Rebuilding kernel with AutoFDO profile...")
                if client is None:
                    raise ValueError("rebuild requires an HTTP client")
                build = run_build(env, profile, runner, client)
                rec.details["build_status"] = build.status
                rec.details["profile_guided"] = bool(build.artifact and build.artifact.profile_guided)
        failed = False
    finally:
        _finish(report, env, "profile", failed)
    return report


# ═══════════════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kernel-forge",
        description="Build, profile-optimize and install a customized kernel",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p_build = sub.add_parser("build", help="Fetch, patch, configure and compile")
    p_build.add_argument("--clean", action="store_true", help="Remove source tree and patches first")
    p_build.add_argument("--config-only", action="store_true", help="Stop after configuration")

    p_install = sub.add_parser("install", help="Install the compiled kernel")
    p_install.add_argument("--no-backup", action="store_true", help="Don't back up the current kernel")
    p_install.add_argument("--skip-dkms", action="store_true", help="Skip DKMS module rebuild")

    p_profile = sub.add_parser("profile", help="Profile-guided optimization loop")
    p_profile.add_argument("action", choices=PROFILE_ACTIONS)
    p_profile.add_argument(
        "--duration",
        type=int,
        default=None,
        help="Sampling window in seconds (default: PROFILE_DURATION)",
    )
    return parser


def _print_summary(report: Report) -> None:
    print("\n" + "=" * 60)
    print(f" {report.version}: {report.status}")
    print("=" * 60)
    for rec in report.phases:
        print(f"  {rec.name:22s}: {rec.status.value:8s} {rec.duration_ms / 1000:8.1f}s")
        for f in rec.findings:
            print(f"      [{f.reason}] {f.message}")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    )

    try:
        settings = Settings()
        profile = resolve_profile(settings.BUILD_PROFILE)
    except (ValidationError, ValueError) as e:
        parser.error(str(e))
    if args.command == "profile" and args.duration is not None and args.duration <= 0:
        parser.error("--duration must be positive")

    env = Environment.from_settings(settings)
    runner = ToolRunner()
    report: Optional[Report] = None
    try:
        with httpx.Client(timeout=settings.DOWNLOAD_TIMEOUT) as client:
            if args.command == "build":
                report = run_build(
                    env, profile, runner, client,
                    clean=args.clean, config_only=args.config_only,
                )
            elif args.command == "install":
                report = run_install(
                    env, profile, runner,
                    backup=not args.no_backup,
                    aux=not args.skip_dkms,
                    cleanup_threshold=settings.CLEANUP_THRESHOLD,
                )
            else:
                duration = args.duration or settings.PROFILE_DURATION
                report = run_profile(env, profile, runner, args.action, duration, client=client)
    except FatalPhaseError as e:
        logger.error("[%s] %s", e.reason.value, e.message)
        if e.hint:
            print(f"\nNext step: {e.hint}", file=sys.stderr)
        return 1

    _print_summary(report)
    if args.command == "install":
        print(f"\n Reboot to use the new kernel ({env.version.full}).")
        print(" Verify after reboot:  uname -r")
    return 0


if __name__ == "__main__":
    sys.exit(main())
