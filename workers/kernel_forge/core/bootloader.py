"""
Boot entry — repoint the default boot entry with a rollback marker.

Order of writes:
  1. previous GRUB_DEFAULT → ``<boot>/grub_previous_default`` (atomic),
     skipped when the previous value already names the new entry so a
     reinstall never overwrites the real rollback target;
  2. ``/etc/default/grub`` rewritten (atomic) with the new GRUB_DEFAULT
     and GRUB_SAVEDEFAULT=true;
  3. menu re-rendered (grub-mkconfig, else update-grub);
  4. alternate-standard entry under ``<boot>/loader/entries`` if that
     directory exists.

Only a missing defaults file or a failed render is reported, as warnings:
the new files are already in place and the previous kernel is still in
the menu.
"""
import logging
import os
import re
from pathlib import Path
from typing import Optional

from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import ToolRunner
from kernel_forge.io.schema import BootEntryUpdate, PhaseRecord
from kernel_forge.policy.profile import BuildProfile
from kernel_forge.policy.verdict import WarnReason

logger = logging.getLogger(__name__)

_DEFAULT_RE = re.compile(r"^GRUB_DEFAULT=(.*)$", re.MULTILINE)
_SAVEDEFAULT_RE = re.compile(r"^#?GRUB_SAVEDEFAULT.*$", re.MULTILINE)


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text)
    if path.exists():
        os.chmod(tmp, path.stat().st_mode & 0o7777)
    os.replace(tmp, path)


def _with_trailing_newline(text: str) -> str:
    return text if not text or text.endswith("\n") else text + "\n"


# ── /etc/default/grub text transforms ────────────────────────────────────────

def read_default(text: str) -> Optional[str]:
    """Value of the first GRUB_DEFAULT line, unquoted; None if absent or empty."""
    m = _DEFAULT_RE.search(text)
    if not m:
        return None
    value = m.group(1).strip().replace('"', "").replace("'", "")
    return value or None


def set_default(text: str, entry: str) -> str:
    line = f'GRUB_DEFAULT="{entry}"'
    if _DEFAULT_RE.search(text):
        return _DEFAULT_RE.sub(lambda _: line, text)
    return _with_trailing_newline(text) + line + "\n"


def enable_save_default(text: str) -> str:
    line = "GRUB_SAVEDEFAULT=true"
    if _SAVEDEFAULT_RE.search(text):
        return _SAVEDEFAULT_RE.sub(lambda _: line, text)
    return _with_trailing_newline(text) + line + "\n"


# ═══════════════════════════════════════════════════════════════════════════════
# Phase
# ═══════════════════════════════════════════════════════════════════════════════

def update_boot_entry(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    rec: PhaseRecord,
) -> BootEntryUpdate:
    full = env.version.full
    new_entry = profile.boot_entry_template.format(release=full)
    update = BootEntryUpdate(new_default=new_entry)
    logger.info("Updating bootloader...")

    defaults = env.grub_default_file
    if defaults.is_file():
        text = defaults.read_text()
        previous = read_default(text)
        update.previous_default = previous
        if previous and previous != new_entry:
            _atomic_write(env.previous_default_marker, previous + "\n")
            update.marker_written = True
            logger.info("Saved previous GRUB default: %s", previous)
        elif previous:
            logger.info("GRUB default already points at %s, keeping existing marker", full)

        logger.info("Setting GRUB default to: %s", new_entry)
        _atomic_write(defaults, enable_save_default(set_default(text, new_entry)))
        update.save_default_enabled = True
        logger.info("Updated %s", defaults)
    else:
        msg = f"{defaults} not found - cannot set default kernel"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.BOOT_DEFAULTS_MISSING, msg)

    update.menu_rendered = render_menu(env, runner, rec)
    update.alternate_entry = write_alternate_entry(env, profile, runner, rec)
    return update


def render_menu(env: Environment, runner: ToolRunner, rec: PhaseRecord) -> bool:
    """Regenerate the consolidated boot menu; warnings only."""
    if runner.available("grub-mkconfig"):
        cfg = next((p for p in env.grub_cfg_candidates if p.is_file()), None)
        if cfg is None:
            msg = "GRUB config not found - update manually"
            logger.warning("  %s", msg)
            rec.warn(WarnReason.MENU_CONFIG_NOT_FOUND, msg)
            return False
        logger.info("Updating GRUB configuration %s...", cfg)
        result = runner.run(["grub-mkconfig", "-o", str(cfg)])
    elif runner.available("update-grub"):
        if not env.is_real_root:
            # update-grub has no output option and always rewrites the host menu
            msg = f"update-grub only renders the host menu; skipped for install root {env.root}"
            logger.warning("  %s", msg)
            rec.warn(WarnReason.MENU_ROOT_UNSUPPORTED, msg)
            return False
        result = runner.run(["update-grub"])
    else:
        msg = "No GRUB update command found; update your bootloader manually"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.MENU_TOOL_MISSING, msg)
        return False

    if not result.ok:
        msg = f"GRUB update failed (rc={result.returncode}): {result.tail(3)}"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.MENU_RENDER_FAILED, msg)
        return False
    logger.info("GRUB configuration updated")
    return True


def write_alternate_entry(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    rec: PhaseRecord,
) -> Optional[str]:
    """systemd-boot style entry; only when ``<boot>/loader/entries`` exists."""
    entries = env.loader_entries_dir
    if not entries.is_dir():
        return None

    full = env.version.full
    result = runner.run(["findmnt", "-n", "-o", "UUID", str(env.root)])
    uuid = result.stdout.strip() if result.ok else ""
    if not uuid:
        msg = "Could not determine root filesystem UUID; systemd-boot entry not written"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.ENTRY_ROOT_UNKNOWN, msg)
        return None

    logger.info("Creating systemd-boot entry...")
    entry = entries / f"linux-{full}.conf"
    _atomic_write(entry, (
        f"title   {profile.alternate_entry_title.format(release=full)}\n"
        f"linux   /vmlinuz-{full}\n"
        f"initrd  /{env.loader_image().name}\n"
        f"options root=UUID={uuid} rw quiet\n"
    ))
    return str(entry)
