"""
Fetcher — obtain the versioned source tree and the patch set.

Idempotence rules:
  - The archive is downloaded only if ``<tarball>`` is absent.  Downloads
    stream into ``<tarball>.part`` and are promoted with ``os.replace``,
    so a file at the final name is always complete.  An archive that
    fails to open as tar is discarded and downloaded again.
  - The tree is extracted only if ``<kernel_dir>`` is absent.  Extraction
    goes into a staging directory and the top-level directory is renamed
    into place.
  - A patch file that already exists and is non-empty is not fetched again.

Only version-keyed paths under ``build_dir`` are written.
"""
import logging
import os
import shutil
import tarfile
from pathlib import Path
from typing import List, Optional, Sequence

import httpx

from kernel_forge.core.environment import Environment
from kernel_forge.io.schema import FetchResult, PatchResult, PhaseRecord
from kernel_forge.policy.profile import PatchSpec
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason, WarnReason

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 16


def download(client: httpx.Client, url: str, dest: Path) -> None:
    """
    Stream *url* into *dest* via a ``.part`` sibling.

    Raises httpx.HTTPError on transport or status failure; the partial
    file is removed in that case.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + ".part")
    try:
        with client.stream("GET", url, follow_redirects=True) as response:
            response.raise_for_status()
            with open(part, "wb") as fh:
                for chunk in response.iter_bytes(CHUNK_SIZE):
                    fh.write(chunk)
                fh.flush()
                os.fsync(fh.fileno())
    except BaseException:
        part.unlink(missing_ok=True)
        raise
    os.replace(part, dest)


def _archive_usable(path: Path) -> bool:
    if not path.is_file() or path.stat().st_size == 0:
        return False
    try:
        return tarfile.is_tarfile(path)
    except OSError:
        return False


# ═══════════════════════════════════════════════════════════════════════════════
# Source tree
# ═══════════════════════════════════════════════════════════════════════════════

def fetch_source(env: Environment, client: httpx.Client) -> FetchResult:
    """Guarantee ``env.kernel_dir`` exists on return."""
    env.build_dir.mkdir(parents=True, exist_ok=True)
    result = FetchResult(
        archive_path=str(env.tarball),
        tree_path=str(env.kernel_dir),
    )

    if env.kernel_dir.is_dir():
        logger.info("Kernel source already present at %s, skipping fetch", env.kernel_dir)
        return result

    if _archive_usable(env.tarball):
        logger.info("Kernel tarball already exists, skipping download")
    else:
        if env.tarball.exists():
            logger.warning("Discarding unreadable archive %s", env.tarball)
            env.tarball.unlink()
        logger.info("Downloading Linux %s from %s", env.version.kernel_version, env.kernel_url)
        try:
            download(client, env.kernel_url, env.tarball)
        except httpx.HTTPError as e:
            raise FatalPhaseError(
                FatalReason.FETCH_FAILED,
                f"Failed to download kernel from {env.kernel_url}: {e}",
            ) from e
        if not _archive_usable(env.tarball):
            env.tarball.unlink(missing_ok=True)
            raise FatalPhaseError(
                FatalReason.FETCH_FAILED,
                f"Downloaded file from {env.kernel_url} is not a tar archive",
            )
        result.downloaded = True

    extract_tree(env.tarball, env.kernel_dir)
    result.extracted = True
    logger.info("Kernel source ready at %s", env.kernel_dir)
    return result


def extract_tree(archive: Path, target: Path) -> None:
    """Extract *archive* and promote its single top-level directory to *target*."""
    if not hasattr(tarfile, "data_filter"):
        # Interpreters before 3.10.12 / 3.11.4 cannot strip unsafe members
        raise FatalPhaseError(
            FatalReason.EXTRACT_FAILED,
            f"Refusing to extract {archive.name}: this Python has no tarfile extraction filters",
            hint="Use Python 3.10.12, 3.11.4 or newer",
        )

    staging = target.with_name(f".extract-{target.name}")
    if staging.exists():
        shutil.rmtree(staging)
    staging.mkdir(parents=True)

    logger.info("Extracting %s", archive.name)
    try:
        with tarfile.open(archive) as tar:
            tar.extractall(staging, filter="data")
    except (tarfile.TarError, OSError) as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise FatalPhaseError(
            FatalReason.EXTRACT_FAILED,
            f"Failed to extract {archive}: {e}",
        ) from e

    top = staging / target.name
    if not top.is_dir():
        entries = [p for p in staging.iterdir() if p.is_dir()]
        if len(entries) != 1:
            shutil.rmtree(staging, ignore_errors=True)
            raise FatalPhaseError(
                FatalReason.EXTRACT_FAILED,
                f"{archive.name} does not contain a single top-level directory",
            )
        top = entries[0]

    os.replace(top, target)
    shutil.rmtree(staging, ignore_errors=True)


# ═══════════════════════════════════════════════════════════════════════════════
# Patch set
# ═══════════════════════════════════════════════════════════════════════════════

def _fetch_one(
    client: httpx.Client,
    base_url: str,
    spec: PatchSpec,
    dest: Path,
) -> Optional[str]:
    """Try each source location in order; return the one that worked."""
    for source in spec.sources:
        url = f"{base_url}/{source}"
        try:
            download(client, url, dest)
        except httpx.HTTPError as e:
            logger.debug("  %s: %s", url, e)
            continue
        return source
    return None


def _fetched(spec: PatchSpec, dest: Path) -> PatchResult:
    return PatchResult(name=spec.local_name, path=str(dest), available=True, status="FETCHED")


def fetch_patches(
    env: Environment,
    client: httpx.Client,
    specs: Sequence[PatchSpec],
    rec: PhaseRecord,
    reference: bool = False,
) -> List[PatchResult]:
    """
    Make each patch of *specs* available under ``env.patches_dir``.

    Absence upstream is expected (patch availability varies per series) and
    recorded as a warning.  Order of the returned list equals *specs*.
    """
    env.patches_dir.mkdir(parents=True, exist_ok=True)
    results: List[PatchResult] = []

    for spec in specs:
        dest = env.patches_dir / spec.local_name
        if dest.is_file() and dest.stat().st_size > 0:
            results.append(_fetched(spec, dest))
            continue

        logger.info("  Downloading %s...", spec.local_name)
        source = _fetch_one(client, env.patches_url, spec, dest)
        if source is None:
            dest.unlink(missing_ok=True)
            msg = f"{spec.local_name} not available for {env.version.base}"
            logger.warning("  %s", msg)
            rec.warn(WarnReason.PATCH_UNAVAILABLE, msg)
            results.append(PatchResult(name=spec.local_name, available=False))
            continue

        if source != spec.sources[0]:
            logger.info("  %s fetched from alternate location %s", spec.local_name, source)
        results.append(_fetched(spec, dest))

    if reference:
        for r in results:
            if r.available:
                r.status = "REFERENCE"
    return results
