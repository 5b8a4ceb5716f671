"""
Shared pytest fixtures for kernel_forge tests.

Nothing here touches the real host:
  - every path goes through an ``Environment`` rooted under ``tmp_path``;
  - external programs are replaced by ``FakeRunner``, which records each
    call and answers with scripted handlers (a handler may create the
    files the real tool would);
  - downloads are served by ``httpx.MockTransport``.

ELF-dependent fixtures copy the running interpreter binary and are
skipped where it is not an ELF file.
"""
import io
import shutil
import sys
import tarfile
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Union

import httpx
import pytest

from kernel_forge.core.elf import is_elf
from kernel_forge.core.environment import Environment
from kernel_forge.core.tools import NOT_FOUND, CommandResult, ToolRunner
from kernel_forge.core.version import VersionId
from kernel_forge.policy.profile import BuildProfile

RUNNING_RELEASE = "6.12.1_1"
KERNEL_URL_BASE = "https://kernel.test/pub/linux/kernel"
PATCHES_URL_BASE = "https://patches.test/master"

Handler = Callable[[List[str], Optional[Path]], Union[None, int, CommandResult]]


# ── Fake tool runner ─────────────────────────────────────────────────────────

class FakeRunner(ToolRunner):
    """
    Scripted ToolRunner.

    Every tool is installed unless named in ``missing``.  ``handlers`` maps
    argv[0] to a callable; it may return None (exit 0), an int exit code or
    a full CommandResult.  Unhandled tools exit 0.
    """

    def __init__(self, missing: Optional[Set[str]] = None):
        self.missing: Set[str] = set(missing or ())
        self.handlers: Dict[str, Handler] = {}
        self.calls: List[List[str]] = []

    def available(self, name: str) -> bool:
        return name not in self.missing

    def run(self, args: Sequence, cwd=None, timeout=None, env=None, capture=True) -> CommandResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        if argv[0] in self.missing:
            return CommandResult(argv, NOT_FOUND, stderr=f"{argv[0]}: command not found")
        handler = self.handlers.get(argv[0])
        if handler is None:
            return CommandResult(argv, 0)
        out = handler(argv, Path(cwd) if cwd else None)
        if out is None:
            return CommandResult(argv, 0)
        if isinstance(out, int):
            return CommandResult(argv, out, stderr="" if out == 0 else f"{argv[0]} failed")
        return out

    def invoked(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == tool]


def out_path(argv: List[str], flag: str) -> Path:
    """Value of ``--flag=value`` in *argv*."""
    prefix = f"{flag}="
    return Path(next(a[len(prefix):] for a in argv if a.startswith(prefix)))


# ── Environment / profile ────────────────────────────────────────────────────

@pytest.fixture
def env(tmp_path: Path) -> Environment:
    root = tmp_path / "root"
    (root / "boot").mkdir(parents=True)
    (root / "etc" / "default").mkdir(parents=True)
    (root / "lib" / "modules").mkdir(parents=True)
    return Environment(
        version=VersionId(6, 19, 2, "-voltdev"),
        build_dir=tmp_path / "build",
        profile_dir=tmp_path / "profile",
        root=root,
        running_release=RUNNING_RELEASE,
        make_vars=["LLVM=1"],
        make_jobs=4,
        kernel_url_base=KERNEL_URL_BASE,
        patches_url_base=PATCHES_URL_BASE,
    )


@pytest.fixture
def profile() -> BuildProfile:
    return replace(BuildProfile.voltdev(), sampler_start_delay=0)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


# ── Binaries ─────────────────────────────────────────────────────────────────

@pytest.fixture
def elf_source() -> Path:
    """A real ELF file (the interpreter binary)."""
    exe = Path(sys.executable).resolve()
    if not is_elf(exe):
        pytest.skip("interpreter binary is not ELF on this platform")
    return exe


def write_kconfig(tree: Path, symbols: Sequence[str]) -> None:
    """Minimal Kconfig declaring *symbols* (without the CONFIG_ prefix)."""
    tree.mkdir(parents=True, exist_ok=True)
    body = "".join(f"config {s}\n\tbool \"{s}\"\n\n" for s in symbols)
    (tree / "Kconfig").write_text(body)


# ── Fake toolchain ───────────────────────────────────────────────────────────

def make_handler(env: Environment, elf: Optional[Path] = None, fail_on: Sequence[str] = ()) -> Handler:
    """
    Simulated kernel ``make``.

    defconfig writes a small .config; a plain build writes bzImage,
    System.map, kernel.release and vmlinux; modules_install creates the
    module tree under INSTALL_MOD_PATH.  Targets in *fail_on* exit 2
    (``"build"`` names the plain build).
    """
    def handler(argv: List[str], cwd: Optional[Path]) -> int:
        targets = [a for a in argv[1:] if "=" not in a and not a.startswith("-")]
        target = targets[0] if targets else "build"
        if target in fail_on:
            return 2
        tree = cwd or env.kernel_dir
        if target == "defconfig":
            (tree / ".config").write_text("CONFIG_LOCALVERSION=\"\"\n# CONFIG_PREEMPT is not set\n")
        elif target == "build":
            image = tree / "arch" / "x86" / "boot" / "bzImage"
            image.parent.mkdir(parents=True, exist_ok=True)
            image.write_bytes(b"bzImage-" + env.version.full.encode())
            (tree / "System.map").write_text("ffffffff81000000 T _text\n")
            release = tree / "include" / "config" / "kernel.release"
            release.parent.mkdir(parents=True, exist_ok=True)
            release.write_text(env.version.full + "\n")
            if elf is not None:
                shutil.copyfile(elf, tree / "vmlinux")
        elif target == "modules_install":
            root = Path("/")
            for a in argv:
                if a.startswith("INSTALL_MOD_PATH="):
                    root = Path(a.split("=", 1)[1])
            mod = root / "lib" / "modules" / env.version.full / "kernel" / "fs"
            mod.mkdir(parents=True, exist_ok=True)
            (mod / "ext4.ko.zst").write_bytes(b"ko")
        return 0

    return handler


# ── Downloads ────────────────────────────────────────────────────────────────

def kernel_tarball(top: str, files: Optional[Dict[str, str]] = None) -> bytes:
    """In-memory .tar.xz with one top-level directory."""
    files = files or {"Makefile": "VERSION = 6\n", "Kconfig": "config PREEMPT\n\tbool\n"}
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:xz") as tar:
        for name, text in files.items():
            data = text.encode()
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeUpstream:
    """Serves a kernel tarball and a set of patch files; counts requests."""

    def __init__(self, env: Environment, patches: Optional[Dict[str, bytes]] = None):
        self.archive_url = env.kernel_url
        self.archive = kernel_tarball(env.version.tree_name)
        self.patches_url = env.patches_url
        self.patches = dict(patches or {})
        self.requests: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url == self.archive_url:
            return httpx.Response(200, content=self.archive)
        if url.startswith(self.patches_url + "/"):
            name = url[len(self.patches_url) + 1:]
            if name in self.patches:
                return httpx.Response(200, content=self.patches[name])
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def count(self, url: str) -> int:
        return sum(1 for u in self.requests if u == url)


@pytest.fixture
def upstream(env: Environment) -> FakeUpstream:
    return FakeUpstream(env)
