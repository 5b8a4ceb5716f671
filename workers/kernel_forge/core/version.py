"""
Version identifier — (major, minor, patch, local suffix).

Every derived path is keyed by one of the string forms below, so build
and install agree on locations only if they agree on this value.
"""
import re
from dataclasses import dataclass

_RELEASE_RE = re.compile(r"^(\d+)\.(\d+)(?:\.(\d+))?(.*)$")


@dataclass(frozen=True)
class VersionId:
    major: int
    minor: int
    patch: int
    local: str = ""

    @property
    def kernel_version(self) -> str:
        """Upstream release, e.g. ``6.19.2``."""
        return f"{self.major}.{self.minor}.{self.patch}"

    @property
    def base(self) -> str:
        """Series, e.g. ``6.19`` (patch sets are published per series)."""
        return f"{self.major}.{self.minor}"

    @property
    def full(self) -> str:
        """Release string reported by the running kernel, e.g. ``6.19.2-voltdev``."""
        return f"{self.kernel_version}{self.local}"

    @property
    def tree_name(self) -> str:
        return f"linux-{self.kernel_version}"

    @property
    def archive_name(self) -> str:
        return f"linux-{self.kernel_version}.tar.xz"

    @classmethod
    def parse(cls, release: str) -> "VersionId":
        """
        Parse a release string such as ``6.19.2-voltdev`` or ``6.8-rc1``.

        A missing patch component is 0.  Anything after the numeric part is
        kept verbatim as the local suffix.
        """
        m = _RELEASE_RE.match(release.strip())
        if m is None:
            raise ValueError(f"Not a kernel release string: {release!r}")
        major, minor, patch, local = m.groups()
        return cls(int(major), int(minor), int(patch or 0), local or "")

    def __str__(self) -> str:
        return self.full
