"""Tests for source and patch retrieval."""
import shutil
import tarfile
from pathlib import Path

import pytest

from conftest import FakeUpstream, kernel_tarball
from kernel_forge.core.environment import Environment
from kernel_forge.core.fetcher import extract_tree, fetch_patches, fetch_source
from kernel_forge.io.schema import PhaseRecord
from kernel_forge.policy.profile import PatchSpec
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason, PhaseStatus


class TestFetchSource:
    """Archive download + extraction idempotence."""

    def test_fresh_fetch_downloads_and_extracts(self, env: Environment, upstream: FakeUpstream):
        with upstream.client() as client:
            result = fetch_source(env, client)
        assert result.downloaded and result.extracted
        assert (env.kernel_dir / "Makefile").is_file()
        assert env.tarball.is_file()
        assert not env.tarball.with_name(env.tarball.name + ".part").exists()

    def test_second_fetch_hits_network_at_most_once(self, env: Environment, upstream: FakeUpstream):
        with upstream.client() as client:
            fetch_source(env, client)
            second = fetch_source(env, client)
        assert upstream.count(env.kernel_url) == 1
        assert not second.downloaded and not second.extracted

    def test_missing_tree_reextracts_without_download(self, env: Environment, upstream: FakeUpstream):
        with upstream.client() as client:
            fetch_source(env, client)
            shutil.rmtree(env.kernel_dir)
            result = fetch_source(env, client)
        assert upstream.count(env.kernel_url) == 1
        assert result.extracted and not result.downloaded
        assert (env.kernel_dir / "Makefile").is_file()

    def test_leftover_partial_download_is_ignored(self, env: Environment, upstream: FakeUpstream):
        env.build_dir.mkdir(parents=True)
        env.tarball.with_name(env.tarball.name + ".part").write_bytes(b"trunc")
        with upstream.client() as client:
            result = fetch_source(env, client)
        assert result.downloaded
        assert (env.kernel_dir / "Makefile").is_file()

    def test_corrupt_archive_is_replaced(self, env: Environment, upstream: FakeUpstream):
        env.build_dir.mkdir(parents=True)
        env.tarball.write_bytes(b"not a tarball")
        with upstream.client() as client:
            result = fetch_source(env, client)
        assert result.downloaded
        assert upstream.count(env.kernel_url) == 1

    def test_retrieval_failure_is_fatal(self, env: Environment, upstream: FakeUpstream):
        upstream.archive_url = "https://elsewhere.test/none"
        with upstream.client() as client:
            with pytest.raises(FatalPhaseError) as exc:
                fetch_source(env, client)
        assert exc.value.reason == FatalReason.FETCH_FAILED
        assert not env.tarball.exists()
        assert not env.kernel_dir.exists()

    def test_unfiltered_extraction_refused(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        archive = tmp_path / "linux-6.19.2.tar.xz"
        archive.write_bytes(kernel_tarball("linux-6.19.2"))
        monkeypatch.delattr(tarfile, "data_filter")
        with pytest.raises(FatalPhaseError) as exc:
            extract_tree(archive, tmp_path / "linux-6.19.2")
        assert exc.value.reason == FatalReason.EXTRACT_FAILED
        assert not (tmp_path / "linux-6.19.2").exists()


class TestFetchPatches:
    """Per-patch availability."""

    def test_missing_patches_warn_and_keep_order(self, env: Environment):
        names = [f"000{i}-p.patch" for i in range(1, 8)]
        served = {n: b"--- a\n+++ b\n" for n in names if n not in ("0002-p.patch", "0005-p.patch")}
        upstream = FakeUpstream(env, served)
        rec = PhaseRecord(name="fetch")
        with upstream.client() as client:
            results = fetch_patches(env, client, [PatchSpec.simple(n) for n in names], rec)

        assert [r.name for r in results] == names
        assert [r.available for r in results] == [True, False, True, True, False, True, True]
        assert rec.status == PhaseStatus.WARN
        assert rec.warning_reasons == ["PATCH_UNAVAILABLE", "PATCH_UNAVAILABLE"]
        assert not (env.patches_dir / "0002-p.patch").exists()

    def test_alternate_location_used(self, env: Environment):
        upstream = FakeUpstream(env, {"sched/0001-bore.patch": b"bore"})
        spec = PatchSpec("bore-cachy.patch", ("sched/0001-bore-cachy.patch", "sched/0001-bore.patch"))
        rec = PhaseRecord(name="fetch")
        with upstream.client() as client:
            [result] = fetch_patches(env, client, [spec], rec)
        assert result.available
        assert Path(result.path).read_bytes() == b"bore"
        assert rec.findings == []

    def test_existing_patch_not_refetched(self, env: Environment):
        env.patches_dir.mkdir(parents=True)
        (env.patches_dir / "0001-a.patch").write_text("local copy")
        upstream = FakeUpstream(env, {"0001-a.patch": b"remote"})
        with upstream.client() as client:
            [result] = fetch_patches(env, client, [PatchSpec.simple("0001-a.patch")], PhaseRecord(name="fetch"))
        assert upstream.requests == []
        assert Path(result.path).read_text() == "local copy"

    def test_reference_patches_marked(self, env: Environment):
        upstream = FakeUpstream(env, {"misc/nvidia/0001-x.patch": b"x"})
        specs = [
            PatchSpec("nvidia/0001-x.patch", ("misc/nvidia/0001-x.patch",)),
            PatchSpec("nvidia/0002-y.patch", ("misc/nvidia/0002-y.patch",)),
        ]
        with upstream.client() as client:
            results = fetch_patches(env, client, specs, PhaseRecord(name="fetch"), reference=True)
        assert [r.status for r in results] == ["REFERENCE", "UNAVAILABLE"]
        assert (env.patches_dir / "nvidia" / "0001-x.patch").is_file()
