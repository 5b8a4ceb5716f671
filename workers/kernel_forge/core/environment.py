"""
Environment — explicit paths + version for one pipeline invocation.

All filesystem state the pipeline reads or writes (source tree, patch set,
boot area, module tree, bootloader files, profile data) is reached through
an ``Environment`` value instead of hard-coded globals.  Re-rooting
``root`` moves the whole live host, which is how tests run sandboxed.

Layout::

    <build_dir>/
      linux-<kver>.tar.xz
      linux-<kver>/                 source tree (+ build_receipt.json)
      patches-<series>/             patch set (+ reference/)
      reports/                      build / install / profile reports
    <profile_dir>/
      perf.data                     raw sample recording
      autofdo.profdata              converted profile
      propeller_cc_profile.txt ...  layout-partitioned profile
    <root>/boot/
      vmlinuz-<full>, System.map-<full>, config-<full>, initramfs-<full>.img
      vmlinuz, System.map, config, initramfs   (version-neutral links)
      backup-<release>-<timestamp>/
      grub_previous_default         rollback marker
    <root>/lib/modules/<full>/
    <root>/etc/default/grub
"""
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from kernel_forge.config import Settings
from kernel_forge.core.version import VersionId


@dataclass(frozen=True)
class Environment:
    version: VersionId
    build_dir: Path
    profile_dir: Path
    root: Path = Path("/")
    running_release: str = field(default_factory=platform.release)
    make_vars: List[str] = field(default_factory=lambda: ["LLVM=1"])
    make_jobs: int = field(default_factory=lambda: os.cpu_count() or 4)
    kernel_url_base: str = "https://cdn.kernel.org/pub/linux/kernel"
    patches_url_base: str = "https://raw.githubusercontent.com/CachyOS/kernel-patches/master"
    arch: str = "x86"

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        running_release: Optional[str] = None,
    ) -> "Environment":
        version = VersionId(
            settings.KERNEL_MAJOR,
            settings.KERNEL_MINOR,
            settings.KERNEL_PATCH,
            settings.LOCAL_VERSION,
        )
        return cls(
            version=version,
            build_dir=settings.BUILD_DIR.resolve(),
            profile_dir=settings.PROFILE_DIR.resolve(),
            root=settings.INSTALL_ROOT,
            running_release=running_release or platform.release(),
            make_vars=settings.MAKE_VARS.split(),
            make_jobs=settings.MAKE_JOBS or os.cpu_count() or 4,
            kernel_url_base=settings.KERNEL_URL_BASE.rstrip("/"),
            patches_url_base=settings.PATCHES_URL_BASE.rstrip("/"),
        )

    # ── Build area ───────────────────────────────────────────────────

    @property
    def kernel_dir(self) -> Path:
        return self.build_dir / self.version.tree_name

    @property
    def tarball(self) -> Path:
        return self.build_dir / self.version.archive_name

    @property
    def patches_dir(self) -> Path:
        return self.build_dir / f"patches-{self.version.base}"

    @property
    def reports_dir(self) -> Path:
        return self.build_dir / "reports"

    @property
    def receipt_path(self) -> Path:
        return self.kernel_dir / "build_receipt.json"

    @property
    def kernel_url(self) -> str:
        return (
            f"{self.kernel_url_base}/v{self.version.major}.x/"
            f"{self.version.archive_name}"
        )

    @property
    def patches_url(self) -> str:
        return f"{self.patches_url_base}/{self.version.base}"

    @property
    def image_path(self) -> Path:
        return self.kernel_dir / "arch" / self.arch / "boot" / "bzImage"

    @property
    def vmlinux_path(self) -> Path:
        return self.kernel_dir / "vmlinux"

    @property
    def system_map_path(self) -> Path:
        return self.kernel_dir / "System.map"

    @property
    def config_path(self) -> Path:
        return self.kernel_dir / ".config"

    @property
    def release_file(self) -> Path:
        """Release string the kernel build itself records."""
        return self.kernel_dir / "include" / "config" / "kernel.release"

    # ── Profile data ─────────────────────────────────────────────────

    @property
    def perf_data(self) -> Path:
        return self.profile_dir / "perf.data"

    @property
    def autofdo_profile(self) -> Path:
        return self.profile_dir / "autofdo.profdata"

    @property
    def propeller_prefix(self) -> Path:
        return self.profile_dir / "propeller"

    @property
    def propeller_marker(self) -> Path:
        return self.profile_dir / "propeller_cc_profile.txt"

    # ── Live host ────────────────────────────────────────────────────

    @property
    def boot_dir(self) -> Path:
        return self.root / "boot"

    @property
    def modules_dir(self) -> Path:
        return self.root / "lib" / "modules"

    @property
    def new_modules_dir(self) -> Path:
        return self.modules_dir / self.version.full

    @property
    def grub_default_file(self) -> Path:
        return self.root / "etc" / "default" / "grub"

    @property
    def grub_cfg_candidates(self) -> List[Path]:
        return [
            self.boot_dir / "grub" / "grub.cfg",
            self.boot_dir / "grub2" / "grub.cfg",
            self.boot_dir / "efi" / "EFI" / "void" / "grub.cfg",
        ]

    @property
    def loader_entries_dir(self) -> Path:
        return self.boot_dir / "loader" / "entries"

    @property
    def previous_default_marker(self) -> Path:
        return self.boot_dir / "grub_previous_default"

    @property
    def running_config_snapshot(self) -> Path:
        return self.root / "proc" / "config.gz"

    @property
    def is_real_root(self) -> bool:
        return self.root.resolve() == Path("/")

    def boot_file(self, stem: str, release: Optional[str] = None) -> Path:
        """``<boot>/<stem>-<release>``; release defaults to the new version."""
        return self.boot_dir / f"{stem}-{release or self.version.full}"

    def loader_image(self, release: Optional[str] = None) -> Path:
        return self.boot_dir / f"initramfs-{release or self.version.full}.img"
