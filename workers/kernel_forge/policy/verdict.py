"""
Verdict — severities, phase statuses and reason enums.

Two severities:
  FATAL  the phase leaves downstream phases without defined inputs;
         the pipeline aborts and the CLI exits non-zero.
  WARN   a safe fallback exists; the reason is recorded and the
         pipeline continues.

Reason values are stable strings; they end up in the JSON reports.
"""
from enum import Enum, unique
from typing import Optional


@unique
class Severity(str, Enum):
    FATAL = "FATAL"
    WARN = "WARN"


@unique
class PhaseStatus(str, Enum):
    OK = "OK"
    WARN = "WARN"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# ── Fatal reasons ────────────────────────────────────────────────────────────

@unique
class FatalReason(str, Enum):
    FETCH_FAILED = "FETCH_FAILED"
    EXTRACT_FAILED = "EXTRACT_FAILED"
    BASE_CONFIG_UNAVAILABLE = "BASE_CONFIG_UNAVAILABLE"
    NORMALIZE_FAILED = "NORMALIZE_FAILED"
    COMPILE_FAILED = "COMPILE_FAILED"
    NOT_ROOT = "NOT_ROOT"
    BUILD_INCOMPLETE = "BUILD_INCOMPLETE"
    VERSION_MISMATCH = "VERSION_MISMATCH"
    DEPLOY_FAILED = "DEPLOY_FAILED"
    INTEGRITY_MISMATCH = "INTEGRITY_MISMATCH"
    LOADER_UNAVAILABLE = "LOADER_UNAVAILABLE"
    SAMPLER_UNAVAILABLE = "SAMPLER_UNAVAILABLE"
    SAMPLER_FAILED = "SAMPLER_FAILED"
    RECORDING_MISSING = "RECORDING_MISSING"
    PROFILED_BINARY_MISSING = "PROFILED_BINARY_MISSING"
    PROFILED_BINARY_AMBIGUOUS = "PROFILED_BINARY_AMBIGUOUS"
    NO_CONVERTER = "NO_CONVERTER"
    PROFILE_MISSING = "PROFILE_MISSING"


# ── Warn reasons ─────────────────────────────────────────────────────────────

@unique
class WarnReason(str, Enum):
    DEPENDENCY_MISSING = "DEPENDENCY_MISSING"
    PATCH_UNAVAILABLE = "PATCH_UNAVAILABLE"
    PATCH_SKIPPED_CONFLICT = "PATCH_SKIPPED_CONFLICT"
    PATCH_APPLY_FAILED = "PATCH_APPLY_FAILED"
    CONFIG_KEY_UNSUPPORTED = "CONFIG_KEY_UNSUPPORTED"
    BINARY_NOT_ELF = "BINARY_NOT_ELF"
    BACKUP_NOTHING_ACTIVE = "BACKUP_NOTHING_ACTIVE"
    BACKUP_FILE_MISSING = "BACKUP_FILE_MISSING"
    REINSTALL_RUNNING = "REINSTALL_RUNNING"
    AUX_TOOL_MISSING = "AUX_TOOL_MISSING"
    AUX_VERSION_UNKNOWN = "AUX_VERSION_UNKNOWN"
    AUX_BUILD_FAILED = "AUX_BUILD_FAILED"
    AUX_MODULE_MISSING = "AUX_MODULE_MISSING"
    BOOT_DEFAULTS_MISSING = "BOOT_DEFAULTS_MISSING"
    MENU_CONFIG_NOT_FOUND = "MENU_CONFIG_NOT_FOUND"
    MENU_RENDER_FAILED = "MENU_RENDER_FAILED"
    MENU_TOOL_MISSING = "MENU_TOOL_MISSING"
    MENU_ROOT_UNSUPPORTED = "MENU_ROOT_UNSUPPORTED"
    ENTRY_ROOT_UNKNOWN = "ENTRY_ROOT_UNKNOWN"
    DEPMOD_FAILED = "DEPMOD_FAILED"
    VERIFY_MISSING = "VERIFY_MISSING"
    CLEANUP_ADVISED = "CLEANUP_ADVISED"
    PROFILED_BINARY_FALLBACK = "PROFILED_BINARY_FALLBACK"
    LAYOUT_PROFILE_FAILED = "LAYOUT_PROFILE_FAILED"


class FatalPhaseError(RuntimeError):
    """
    Abort the remaining pipeline.

    ``hint`` is the actionable next step printed by the CLI
    (e.g. "Run: kernel-forge profile collect").
    """

    def __init__(self, reason: FatalReason, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"[{self.reason.value}] {self.message} ({self.hint})"
        return f"[{self.reason.value}] {self.message}"
