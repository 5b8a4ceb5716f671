"""
Schema — Pydantic models for pipeline reports.

Three reports, one per operator verb:
  1. build_report    — fetch / patch / configure / compile phases.
  2. install_report  — precheck … advisory cleanup phases.
  3. profile_report  — collect / convert / rebuild phases.

Plus ``build_receipt.json`` (CompiledArtifact) written into the source tree
only after a successful compile; install's PRECHECK reads it back.

Runtime contract fields (present in every report):
  package_name, schema_version, version.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from kernel_forge import PACKAGE_NAME, SCHEMA_VERSION
from kernel_forge.policy.verdict import PhaseStatus, Severity, WarnReason


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ── Phase records ────────────────────────────────────────────────────────────

class Finding(BaseModel):
    """One recorded warning or fatal reason."""
    reason: str
    message: str
    severity: Severity = Severity.WARN


class PhaseRecord(BaseModel):
    """Observable outcome of a single phase."""

    name: str
    status: PhaseStatus = PhaseStatus.OK
    findings: List[Finding] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0

    def warn(self, reason: WarnReason, message: str) -> None:
        self.findings.append(Finding(reason=reason.value, message=message))
        if self.status == PhaseStatus.OK:
            self.status = PhaseStatus.WARN

    @property
    def warning_reasons(self) -> List[str]:
        return [f.reason for f in self.findings]


# ── Build payloads ───────────────────────────────────────────────────────────

class FetchResult(BaseModel):
    archive_path: str
    tree_path: str
    downloaded: bool = False
    extracted: bool = False


class PatchResult(BaseModel):
    """Outcome for one patch of the ordered patch set."""
    name: str
    path: Optional[str] = None
    available: bool = False
    status: str = "UNAVAILABLE"   # FETCHED | REFERENCE | APPLIED | SKIPPED_CONFLICT | APPLY_FAILED | UNAVAILABLE


class DirectiveResult(BaseModel):
    """Tagged result of one configuration directive."""
    op: str
    key: str
    value: Optional[str] = None
    status: str                    # APPLIED | SKIPPED_UNSUPPORTED
    resolved_key: Optional[str] = None


class CompiledArtifact(BaseModel):
    """build_receipt.json — promotion marker for a finished compile."""

    package_name: str = PACKAGE_NAME
    schema_version: str = SCHEMA_VERSION
    version: str
    tree_path: str
    image_path: str
    image_sha256: str
    system_map_path: str
    config_path: str
    config_sha256: str
    vmlinux_build_id: Optional[str] = None
    autofdo_profile: Optional[str] = None
    propeller_prefix: Optional[str] = None
    compiled_at: str = Field(default_factory=now_iso)

    @property
    def profile_guided(self) -> bool:
        return self.autofdo_profile is not None


class BuildReport(BaseModel):
    package_name: str = PACKAGE_NAME
    schema_version: str = SCHEMA_VERSION
    version: str
    profile_id: str
    started_at: str = Field(default_factory=now_iso)
    finished_at: Optional[str] = None
    status: str = "RUNNING"        # RUNNING | SUCCESS | FAILED
    phases: List[PhaseRecord] = Field(default_factory=list)
    fetch: Optional[FetchResult] = None
    patches: List[PatchResult] = Field(default_factory=list)
    base_config_source: Optional[str] = None
    directives: List[DirectiveResult] = Field(default_factory=list)
    artifact: Optional[CompiledArtifact] = None


# ── Install payloads ─────────────────────────────────────────────────────────

class BackupSnapshot(BaseModel):
    """backup_manifest.json inside a backup directory."""
    release: str
    backup_dir: str
    created_at: str = Field(default_factory=now_iso)
    files: Dict[str, str] = Field(default_factory=dict)   # name -> sha256
    missing: List[str] = Field(default_factory=list)


class BootEntryUpdate(BaseModel):
    new_default: str
    previous_default: Optional[str] = None
    marker_written: bool = False
    save_default_enabled: bool = False
    menu_rendered: bool = False
    alternate_entry: Optional[str] = None


class VerifyResult(BaseModel):
    image: bool = False
    loader_image: bool = False
    modules_dir: bool = False
    aux_module: bool = False

    @property
    def errors(self) -> int:
        """Aux module absence is informational and not counted."""
        return sum(1 for ok in (self.image, self.loader_image, self.modules_dir) if not ok)


class InstallReport(BaseModel):
    package_name: str = PACKAGE_NAME
    schema_version: str = SCHEMA_VERSION
    version: str
    started_at: str = Field(default_factory=now_iso)
    finished_at: Optional[str] = None
    status: str = "RUNNING"
    phases: List[PhaseRecord] = Field(default_factory=list)
    backup: Optional[BackupSnapshot] = None
    boot_entry: Optional[BootEntryUpdate] = None
    verify: Optional[VerifyResult] = None
    other_installed: List[str] = Field(default_factory=list)


# ── Profile payloads ─────────────────────────────────────────────────────────

class ProfileReport(BaseModel):
    package_name: str = PACKAGE_NAME
    schema_version: str = SCHEMA_VERSION
    version: str
    started_at: str = Field(default_factory=now_iso)
    finished_at: Optional[str] = None
    status: str = "RUNNING"
    phases: List[PhaseRecord] = Field(default_factory=list)
    recording: Optional[str] = None
    profiled_binary: Optional[str] = None
    converter: Optional[str] = None
    converted_profile: Optional[str] = None
    layout_profile: Optional[str] = None
