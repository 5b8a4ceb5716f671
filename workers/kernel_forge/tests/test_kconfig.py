"""Tests for the config mutator."""
import gzip
from pathlib import Path

import pytest

from conftest import FakeRunner, make_handler, write_kconfig
from kernel_forge.core.environment import Environment
from kernel_forge.core.kconfig import (
    KernelConfig,
    apply_directives,
    configure,
    load_base_config,
    scan_kconfig_symbols,
)
from kernel_forge.io.schema import PhaseRecord
from kernel_forge.policy.profile import (
    BuildProfile,
    DirectiveOp,
    disable,
    enable,
    module,
    set_str,
    set_val,
)
from kernel_forge.policy.verdict import FatalPhaseError, FatalReason, PhaseStatus

SAMPLE = """\
#
# Automatically generated file; DO NOT EDIT.
#
CONFIG_PREEMPT=y
# CONFIG_HZ_100 is not set
CONFIG_HZ=250
CONFIG_DRM_NOUVEAU=m
CONFIG_DEFAULT_TCP_CONG="cubic"
"""


class TestKernelConfig:

    def test_parse_values(self):
        cfg = KernelConfig.parse(SAMPLE)
        assert cfg.raw("CONFIG_PREEMPT") == "y"
        assert cfg.raw("HZ_100") == "n"
        assert cfg.raw("CONFIG_HZ") == "250"
        assert cfg.raw("CONFIG_DRM_NOUVEAU") == "m"
        assert cfg.value("CONFIG_DEFAULT_TCP_CONG") == "cubic"
        assert cfg.raw("CONFIG_MISSING") is None
        assert len(cfg) == 5

    def test_dump_uses_kernel_syntax(self):
        text = KernelConfig.parse(SAMPLE).dump()
        assert "# CONFIG_HZ_100 is not set\n" in text
        assert 'CONFIG_DEFAULT_TCP_CONG="cubic"\n' in text
        assert "Automatically generated" not in text

    def test_load_gzip(self, tmp_path: Path):
        path = tmp_path / "config.gz"
        with gzip.open(path, "wt") as fh:
            fh.write(SAMPLE)
        assert KernelConfig.load(path).raw("CONFIG_HZ") == "250"


class TestApplyDirectives:

    def test_last_write_wins(self):
        cfg = KernelConfig.parse(SAMPLE)
        apply_directives(cfg, [set_val("CONFIG_HZ", 300), set_val("CONFIG_HZ", 1000)], None)
        assert cfg.raw("CONFIG_HZ") == "1000"

    def test_each_op(self):
        cfg = KernelConfig()
        apply_directives(cfg, [
            enable("CONFIG_A"),
            disable("CONFIG_B"),
            module("CONFIG_C"),
            set_str("CONFIG_D", 'say "hi"'),
            set_val("CONFIG_E", 32),
        ], None)
        assert [cfg.raw(k) for k in "ABCDE"] == ["y", "n", "m", '"say \\"hi\\""', "32"]
        assert cfg.value("CONFIG_D") == 'say "hi"'

    def test_unsupported_key_untouched(self):
        cfg = KernelConfig.parse(SAMPLE)
        results = apply_directives(
            cfg,
            [disable("CONFIG_PREEMPT"), set_val("CONFIG_HZ", 1000)],
            supported={"CONFIG_HZ"},
        )
        assert cfg.raw("CONFIG_PREEMPT") == "y"
        assert cfg.raw("CONFIG_HZ") == "1000"
        assert [r.status for r in results] == ["SKIPPED_UNSUPPORTED", "APPLIED"]

    def test_alternate_key_used_when_primary_unsupported(self):
        cfg = KernelConfig()
        [result] = apply_directives(
            cfg,
            [enable("CONFIG_MNATIVE_INTEL", "CONFIG_MARCH_NATIVE_INTEL", "CONFIG_GENERIC_CPU")],
            supported={"CONFIG_GENERIC_CPU"},
        )
        assert result.resolved_key == "CONFIG_GENERIC_CPU"
        assert cfg.raw("CONFIG_GENERIC_CPU") == "y"
        assert "CONFIG_MNATIVE_INTEL" not in cfg



class TestVoltdevDirectives:

    @pytest.fixture
    def applied(self) -> KernelConfig:
        cfg = KernelConfig()
        apply_directives(cfg, BuildProfile.voltdev().directives, None)
        return cfg

    def test_every_section_present(self, applied: KernelConfig):
        assert applied.raw("CONFIG_SCHED_POC_SELECTOR") == "y"
        assert applied.raw("CONFIG_FB_VESA") == "y"
        assert applied.raw("CONFIG_KVM_INTEL") == "y"
        assert applied.raw("CONFIG_KALLSYMS") == "n"
        assert applied.raw("CONFIG_CC_OPTIMIZE_FOR_PERFORMANCE") == "n"
        assert applied.raw("CONFIG_NR_CPUS") == "32"
        assert applied.value("CONFIG_ZSWAP_COMPRESSOR_DEFAULT") == "zstd"

    def test_ops_and_alternates_kept(self):
        by_key = {d.key: d for d in BuildProfile.voltdev().directives}
        assert by_key["CONFIG_MQ_IOSCHED_ADIOS"].op == DirectiveOp.MODULE
        assert by_key["CONFIG_TCP_CONG_BBR"].alternates == ("CONFIG_TCP_CONG_BBR2",)

    def test_later_lto_block_turns_modversions_off(self, applied: KernelConfig):
        ops = [d.op for d in BuildProfile.voltdev().directives if d.key == "CONFIG_MODVERSIONS"]
        assert ops == [DirectiveOp.ENABLE, DirectiveOp.DISABLE]
        assert applied.raw("CONFIG_MODVERSIONS") == "n"


class TestScanKconfig:

    def test_symbols_collected(self, tmp_path: Path):
        write_kconfig(tmp_path / "tree", ["PREEMPT", "HZ"])
        sub = tmp_path / "tree" / "mm"
        sub.mkdir()
        (sub / "Kconfig.debug").write_text("menuconfig ZSWAP\n\tbool\n")
        assert scan_kconfig_symbols(tmp_path / "tree") == {"CONFIG_PREEMPT", "CONFIG_HZ", "CONFIG_ZSWAP"}

    def test_no_kconfig_means_unknown(self, tmp_path: Path):
        (tmp_path / "empty").mkdir()
        assert scan_kconfig_symbols(tmp_path / "empty") is None


class TestBaseConfig:

    def test_running_snapshot_preferred(self, env: Environment, runner: FakeRunner):
        env.running_config_snapshot.parent.mkdir(parents=True)
        with gzip.open(env.running_config_snapshot, "wt") as fh:
            fh.write("CONFIG_FROM_RUNNING=y\n")
        env.boot_file("config", env.running_release).write_text("CONFIG_FROM_BOOT=y\n")

        source, cfg = load_base_config(env, runner)
        assert source == "running"
        assert "CONFIG_FROM_RUNNING" in cfg
        assert runner.calls == []

    def test_boot_snapshot_second(self, env: Environment, runner: FakeRunner):
        env.boot_file("config", env.running_release).write_text("CONFIG_FROM_BOOT=y\n")
        source, cfg = load_base_config(env, runner)
        assert source == "boot"
        assert "CONFIG_FROM_BOOT" in cfg

    def test_defconfig_last(self, env: Environment, runner: FakeRunner):
        env.kernel_dir.mkdir(parents=True)
        runner.handlers["make"] = make_handler(env)
        source, cfg = load_base_config(env, runner)
        assert source == "defconfig"
        assert runner.invoked("make")[0][-1] == "defconfig"

    def test_no_base_is_fatal(self, env: Environment, runner: FakeRunner):
        env.kernel_dir.mkdir(parents=True)
        runner.handlers["make"] = lambda argv, cwd: 2
        with pytest.raises(FatalPhaseError) as exc:
            load_base_config(env, runner)
        assert exc.value.reason == FatalReason.BASE_CONFIG_UNAVAILABLE


class TestConfigure:

    @pytest.fixture
    def small_profile(self) -> BuildProfile:
        return BuildProfile(
            profile_id="test",
            directives=(
                enable("CONFIG_PREEMPT"),
                set_val("CONFIG_HZ", 1000),
                enable("CONFIG_SCHED_BORE"),
                enable("CONFIG_CACHY"),
            ),
            report_keys=("CONFIG_PREEMPT", "CONFIG_HZ"),
        )

    def test_resolved_config_written(self, env: Environment, runner: FakeRunner, small_profile: BuildProfile):
        write_kconfig(env.kernel_dir, ["PREEMPT", "HZ", "LOCALVERSION"])
        env.boot_file("config", env.running_release).write_text(SAMPLE)
        rec = PhaseRecord(name="configure")

        source, results, resolved = configure(env, small_profile, runner, rec)

        assert source == "boot"
        assert resolved.raw("CONFIG_PREEMPT") == "y"
        assert resolved.raw("CONFIG_HZ") == "1000"
        assert resolved.value("CONFIG_LOCALVERSION") == "-voltdev"
        assert (env.kernel_dir / ".config.original").read_text().count("CONFIG_HZ=250") == 1
        assert runner.invoked("make")[-1][-1] == "olddefconfig"

    def test_unsupported_keys_reported_once(self, env: Environment, runner: FakeRunner, small_profile: BuildProfile):
        write_kconfig(env.kernel_dir, ["PREEMPT", "HZ", "LOCALVERSION"])
        env.boot_file("config", env.running_release).write_text(SAMPLE)
        rec = PhaseRecord(name="configure")

        configure(env, small_profile, runner, rec)

        assert rec.status == PhaseStatus.WARN
        assert rec.warning_reasons == ["CONFIG_KEY_UNSUPPORTED"]
        assert "CONFIG_SCHED_BORE" in rec.findings[0].message
        assert "CONFIG_CACHY" in rec.findings[0].message
        assert rec.details["skipped"] == 2

    def test_local_version_overrides_profile(self, env: Environment, runner: FakeRunner):
        write_kconfig(env.kernel_dir, ["LOCALVERSION"])
        env.boot_file("config", env.running_release).write_text(SAMPLE)
        profile = BuildProfile(profile_id="test", directives=(set_str("CONFIG_LOCALVERSION", "-other"),))

        _, _, resolved = configure(env, profile, runner, PhaseRecord(name="configure"))
        assert resolved.value("CONFIG_LOCALVERSION") == env.version.local

    def test_normalize_failure_is_fatal(self, env: Environment, runner: FakeRunner, small_profile: BuildProfile):
        write_kconfig(env.kernel_dir, ["PREEMPT"])
        env.boot_file("config", env.running_release).write_text(SAMPLE)
        runner.handlers["make"] = lambda argv, cwd: 2
        with pytest.raises(FatalPhaseError) as exc:
            configure(env, small_profile, runner, PhaseRecord(name="configure"))
        assert exc.value.reason == FatalReason.NORMALIZE_FAILED
