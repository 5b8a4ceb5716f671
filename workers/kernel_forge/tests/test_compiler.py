"""Tests for the compiler driver."""
from pathlib import Path

import pytest

from conftest import FakeRunner, make_handler
from kernel_forge.core.compiler import compile_kernel, make_args
from kernel_forge.core.environment import Environment
from kernel_forge.io.schema import CompiledArtifact, PhaseRecord
from kernel_forge.io.writer import read_model
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason


@pytest.fixture
def tree(env: Environment) -> Path:
    env.kernel_dir.mkdir(parents=True)
    env.config_path.write_text("CONFIG_LOCALVERSION=\"-voltdev\"\n")
    return env.kernel_dir


def _profile_vars(argv):
    return [a for a in argv if a.startswith("CLANG_")]


class TestCompileKernel:

    def test_without_profile_data(self, env: Environment, runner: FakeRunner, tree: Path):
        """No profile data still produces a valid, non-profile-guided artifact."""
        runner.handlers["make"] = make_handler(env)
        artifact = compile_kernel(env, runner, PhaseRecord(name="compile"))

        calls = runner.invoked("make")
        assert len(calls) == 2
        assert calls[1][-1] == "modules"
        assert all(_profile_vars(c) == [] for c in calls)
        assert not artifact.profile_guided
        assert read_model(CompiledArtifact, env.receipt_path) == artifact

    def test_autofdo_profile_passed(self, env: Environment, runner: FakeRunner, tree: Path):
        env.profile_dir.mkdir(parents=True)
        env.autofdo_profile.write_bytes(b"prof")
        runner.handlers["make"] = make_handler(env)
        artifact = compile_kernel(env, runner, PhaseRecord(name="compile"))

        assert _profile_vars(runner.invoked("make")[0]) == [f"CLANG_AUTOFDO_PROFILE={env.autofdo_profile}"]
        assert artifact.profile_guided

    def test_layout_profile_needs_marker(self, env: Environment, tree: Path):
        env.profile_dir.mkdir(parents=True)
        assert _profile_vars(make_args(env)) == []
        env.propeller_marker.write_text("x")
        assert _profile_vars(make_args(env)) == [f"CLANG_PROPELLER_PROFILE_PREFIX={env.propeller_prefix}"]

    def test_failure_leaves_no_receipt(self, env: Environment, runner: FakeRunner, tree: Path):
        runner.handlers["make"] = make_handler(env)
        compile_kernel(env, runner, PhaseRecord(name="compile"))
        assert env.receipt_path.is_file()

        runner.handlers["make"] = make_handler(env, fail_on=("modules",))
        with pytest.raises(FatalPhaseError) as exc:
            compile_kernel(env, runner, PhaseRecord(name="compile"))
        assert exc.value.reason == FatalReason.COMPILE_FAILED
        assert not env.receipt_path.exists()

    def test_missing_image_after_success_is_fatal(self, env: Environment, runner: FakeRunner, tree: Path):
        with pytest.raises(FatalPhaseError) as exc:
            compile_kernel(env, runner, PhaseRecord(name="compile"))
        assert exc.value.reason == FatalReason.COMPILE_FAILED

    def test_vmlinux_build_id_recorded(self, env: Environment, runner: FakeRunner, tree: Path, elf_source: Path):
        runner.handlers["make"] = make_handler(env, elf=elf_source)
        rec = PhaseRecord(name="compile")
        compile_kernel(env, runner, rec)
        assert "BINARY_NOT_ELF" not in rec.warning_reasons

    def test_non_elf_vmlinux_warns(self, env: Environment, runner: FakeRunner, tree: Path):
        runner.handlers["make"] = make_handler(env)
        env.vmlinux_path.write_bytes(b"garbage")
        rec = PhaseRecord(name="compile")
        artifact = compile_kernel(env, runner, rec)
        assert rec.warning_reasons == ["BINARY_NOT_ELF"]
        assert artifact.vmlinux_build_id is None
