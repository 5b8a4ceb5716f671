"""
Backup — snapshot the active kernel's boot files before deploying.

Layout::

    <boot>/backup-<running release>-<YYYYmmdd-HHMMSS>/
        vmlinuz-<release>            (or vmlinuz)
        initramfs-<release>.img      (or initrd.img-<release>)
        config-<release>
        System.map-<release>
        backup_manifest.json         name → sha256

Snapshots are never pruned.  A missing individual file is recorded and
skipped; nothing active at all means no directory is created.
"""
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from kernel_forge.core.elf import hash_file
from kernel_forge.core.environment import Environment
from kernel_forge.io.schema import BackupSnapshot, PhaseRecord
from kernel_forge.io.writer import write_model
from kernel_forge.policy.verdict import WarnReason

logger = logging.getLogger(__name__)

MANIFEST_NAME = "backup_manifest.json"


def backup_candidates(boot: Path, release: str) -> List[Tuple[str, List[Path]]]:
    """(role, preferred paths) for each file of the active kernel."""
    return [
        ("image", [boot / f"vmlinuz-{release}", boot / "vmlinuz"]),
        ("loader_image", [boot / f"initramfs-{release}.img", boot / f"initrd.img-{release}"]),
        ("config", [boot / f"config-{release}"]),
        ("symbol_map", [boot / f"System.map-{release}"]),
    ]


def _unique_dir(boot: Path, release: str, now: datetime) -> Path:
    base = f"backup-{release}-{now.strftime('%Y%m%d-%H%M%S')}"
    target = boot / base
    n = 1
    while target.exists():
        target = boot / f"{base}-{n}"
        n += 1
    return target


def snapshot_active(
    env: Environment,
    rec: PhaseRecord,
    now: Optional[datetime] = None,
) -> Optional[BackupSnapshot]:
    """Copy the running kernel's boot files into a fresh backup directory."""
    release = env.running_release
    logger.info("Backing up current kernel (%s)...", release)

    found: List[Path] = []
    missing: List[str] = []
    for role, paths in backup_candidates(env.boot_dir, release):
        hit = next((p for p in paths if p.is_file()), None)
        if hit is None:
            missing.append(role)
        else:
            found.append(hit)

    if not found:
        msg = f"No boot files found for running kernel {release}; nothing to back up"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.BACKUP_NOTHING_ACTIVE, msg)
        return None

    backup_dir = _unique_dir(env.boot_dir, release, now or datetime.now())
    backup_dir.mkdir(parents=True)
    snapshot = BackupSnapshot(release=release, backup_dir=str(backup_dir), missing=missing)
    for src in found:
        dest = backup_dir / src.name
        shutil.copy2(src, dest)
        snapshot.files[src.name] = hash_file(dest)
    write_model(snapshot, backup_dir / MANIFEST_NAME)

    if missing:
        msg = f"Backup of {release} is missing: {', '.join(missing)}"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.BACKUP_FILE_MISSING, msg)

    rec.details["backup_dir"] = str(backup_dir)
    logger.info("Backup created at %s", backup_dir)
    return snapshot
