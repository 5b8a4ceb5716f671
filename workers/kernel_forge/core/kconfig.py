"""
Config mutator — base configuration + ordered directives → resolved config.

Base preference order:
  1. running-system snapshot   (<root>/proc/config.gz)
  2. boot-area snapshot        (<root>/boot/config-<running release>)
  3. toolchain default         (make defconfig)

Directives are applied in order, last write wins per key.  A directive
whose key (and every alternate) is unknown to the tree's Kconfig is a
no-op tagged SKIPPED_UNSUPPORTED; all skips are reported once.  A final
``make olddefconfig`` pass fills defaults for options the directives
newly exposed.
"""
import gzip
import logging
import os
import re
from collections import OrderedDict
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import ToolRunner
from kernel_forge.io.schema import DirectiveResult, PhaseRecord
from kernel_forge.policy.profile import BuildProfile, Directive, DirectiveOp, set_str
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason, WarnReason

logger = logging.getLogger(__name__)

APPLIED = "APPLIED"
SKIPPED_UNSUPPORTED = "SKIPPED_UNSUPPORTED"

_SET_RE = re.compile(r"^(CONFIG_[A-Za-z0-9_]+)=(.*)$")
_UNSET_RE = re.compile(r"^# (CONFIG_[A-Za-z0-9_]+) is not set$")
_KCONFIG_SYMBOL_RE = re.compile(r"^\s*(?:menu)?config\s+([A-Za-z0-9_]+)\s*$", re.MULTILINE)


def normalize_key(key: str) -> str:
    return key if key.startswith("CONFIG_") else f"CONFIG_{key}"


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(raw: str) -> str:
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        return raw[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return raw


class KernelConfig:
    """
    Ordered ``.config`` mapping: key → raw value.

    Raw values: ``y`` (enabled), ``m`` (module), ``n`` (disabled, written as
    ``# CONFIG_X is not set``), a quoted string, or an integer/hex literal.
    Comment lines other than "is not set" are dropped on save.
    """

    def __init__(self, entries: Optional[Iterable[Tuple[str, str]]] = None):
        self._entries: "OrderedDict[str, str]" = OrderedDict(entries or ())

    # ── parsing / serialization ──────────────────────────────────────

    @classmethod
    def parse(cls, text: str) -> "KernelConfig":
        cfg = cls()
        for line in text.splitlines():
            line = line.strip()
            m = _SET_RE.match(line)
            if m:
                cfg._entries[m.group(1)] = m.group(2)
                continue
            m = _UNSET_RE.match(line)
            if m:
                cfg._entries[m.group(1)] = "n"
        return cfg

    @classmethod
    def load(cls, path: Path) -> "KernelConfig":
        if path.suffix == ".gz":
            with gzip.open(path, "rt") as fh:
                return cls.parse(fh.read())
        return cls.parse(path.read_text())

    def dump(self) -> str:
        lines = []
        for key, raw in self._entries.items():
            if raw == "n":
                lines.append(f"# {key} is not set")
            else:
                lines.append(f"{key}={raw}")
        return "\n".join(lines) + "\n"

    def save(self, path: Path) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(self.dump())
        os.replace(tmp, path)

    # ── access ───────────────────────────────────────────────────────

    def __contains__(self, key: str) -> bool:
        return normalize_key(key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def raw(self, key: str) -> Optional[str]:
        return self._entries.get(normalize_key(key))

    def value(self, key: str) -> Optional[str]:
        """Value with string quoting removed; None if the key is absent."""
        raw = self.raw(key)
        return None if raw is None else _unquote(raw)

    def set_raw(self, key: str, raw: str) -> None:
        self._entries[normalize_key(key)] = raw

    def apply(self, directive: Directive, key: str) -> None:
        """Write *directive* onto *key* (already resolved against the tree)."""
        op = directive.op
        if op == DirectiveOp.ENABLE:
            self.set_raw(key, "y")
        elif op == DirectiveOp.DISABLE:
            self.set_raw(key, "n")
        elif op == DirectiveOp.MODULE:
            self.set_raw(key, "m")
        elif op == DirectiveOp.SET_STR:
            self.set_raw(key, _quote(directive.value or ""))
        elif op == DirectiveOp.SET_VAL:
            self.set_raw(key, directive.value or "0")
        else:
            raise ValueError(f"Unknown directive op: {op}")


# ═══════════════════════════════════════════════════════════════════════════════
# Supported keys
# ═══════════════════════════════════════════════════════════════════════════════

def scan_kconfig_symbols(tree: Path) -> Optional[Set[str]]:
    """
    Collect every ``config``/``menuconfig`` symbol declared under *tree*.

    Returns None when the tree has no Kconfig files at all, meaning
    "cannot tell"; every key is then treated as supported.
    """
    symbols: Set[str] = set()
    found = False
    for dirpath, dirnames, filenames in os.walk(tree):
        if ".git" in dirnames:
            dirnames.remove(".git")
        for name in filenames:
            if not name.startswith("Kconfig"):
                continue
            found = True
            try:
                text = (Path(dirpath) / name).read_text(errors="replace")
            except OSError:
                continue
            symbols.update(f"CONFIG_{s}" for s in _KCONFIG_SYMBOL_RE.findall(text))
    return symbols if found else None


def resolve_directive(directive: Directive, supported: Optional[Set[str]]) -> Optional[str]:
    """First key among the directive's candidates that the tree supports."""
    for candidate in directive.candidates:
        key = normalize_key(candidate)
        if supported is None or key in supported:
            return key
    return None


def apply_directives(
    cfg: KernelConfig,
    directives: Iterable[Directive],
    supported: Optional[Set[str]],
) -> List[DirectiveResult]:
    """Apply *directives* in order; one tagged result per directive."""
    results: List[DirectiveResult] = []
    for d in directives:
        key = resolve_directive(d, supported)
        if key is None:
            results.append(DirectiveResult(
                op=d.op.value, key=d.key, value=d.value, status=SKIPPED_UNSUPPORTED,
            ))
            continue
        cfg.apply(d, key)
        results.append(DirectiveResult(
            op=d.op.value, key=d.key, value=d.value, status=APPLIED, resolved_key=key,
        ))
    return results


# ═══════════════════════════════════════════════════════════════════════════════
# Stage
# ═══════════════════════════════════════════════════════════════════════════════

def load_base_config(env: Environment, runner: ToolRunner) -> Tuple[str, KernelConfig]:
    """Return (source label, base config) using the first available provider."""
    if env.running_config_snapshot.is_file():
        logger.info("  Using current kernel config as base...")
        return "running", KernelConfig.load(env.running_config_snapshot)

    boot_config = env.boot_file("config", env.running_release)
    if boot_config.is_file():
        logger.info("  Using %s as base...", boot_config)
        return "boot", KernelConfig.load(boot_config)

    logger.info("  Using defconfig as base...")
    result = runner.run(["make", *env.make_vars, "defconfig"], cwd=env.kernel_dir)
    if not result.ok or not env.config_path.is_file():
        raise FatalPhaseError(
            FatalReason.BASE_CONFIG_UNAVAILABLE,
            f"No base configuration: make defconfig failed: {result.tail(5)}",
        )
    return "defconfig", KernelConfig.load(env.config_path)


def configure(
    env: Environment,
    profile: BuildProfile,
    runner: ToolRunner,
    rec: PhaseRecord,
) -> Tuple[str, List[DirectiveResult], KernelConfig]:
    """Produce the resolved ``.config`` inside the source tree."""
    logger.info("Configuring kernel...")
    source, cfg = load_base_config(env, runner)
    cfg.save(env.config_path)
    cfg.save(env.kernel_dir / ".config.original")

    supported = scan_kconfig_symbols(env.kernel_dir)
    # Local version goes last so build and install always agree on the release.
    directives = list(profile.directives) + [
        set_str("CONFIG_LOCALVERSION", env.version.local),
    ]
    results = apply_directives(cfg, directives, supported)
    cfg.save(env.config_path)

    skipped = [r.key for r in results if r.status == SKIPPED_UNSUPPORTED]
    if skipped:
        msg = f"{len(skipped)} option(s) not supported by this tree: {', '.join(skipped)}"
        logger.warning("  %s", msg)
        rec.warn(WarnReason.CONFIG_KEY_UNSUPPORTED, msg)

    logger.info("  Normalizing configuration (olddefconfig)...")
    result = runner.run(["make", *env.make_vars, "olddefconfig"], cwd=env.kernel_dir)
    if not result.ok:
        raise FatalPhaseError(
            FatalReason.NORMALIZE_FAILED,
            f"make olddefconfig failed: {result.tail(5)}",
        )

    resolved = KernelConfig.load(env.config_path)
    logger.info("Key configuration values:")
    for key in profile.report_keys:
        raw = resolved.raw(key)
        if raw is not None:
            logger.info("  %s=%s", key, raw)

    rec.details["base"] = source
    rec.details["applied"] = len(results) - len(skipped)
    rec.details["skipped"] = len(skipped)
    return source, results, resolved
