"""
Profile — tuning-profile descriptor.

The profile carries every opinion about *what* to build (patches, option
directives, loader drivers, auxiliary module) so that the core stages
contain no hard-coded choices.  Changing a patch list or an option is a
profile change, not a code change.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class DirectiveOp(str, Enum):
    ENABLE = "enable"
    DISABLE = "disable"
    MODULE = "module"
    SET_STR = "set-str"
    SET_VAL = "set-val"


@dataclass(frozen=True)
class Directive:
    """
    One configuration override.

    ``alternates`` are tried in order when ``key`` is not supported by the
    tree; the first supported key receives the directive.
    """
    op: DirectiveOp
    key: str
    value: Optional[str] = None
    alternates: Tuple[str, ...] = ()

    @property
    def candidates(self) -> Tuple[str, ...]:
        return (self.key,) + self.alternates


def enable(key: str, *alternates: str) -> Directive:
    return Directive(DirectiveOp.ENABLE, key, alternates=alternates)


def disable(key: str) -> Directive:
    return Directive(DirectiveOp.DISABLE, key)


def module(key: str) -> Directive:
    return Directive(DirectiveOp.MODULE, key)


def set_str(key: str, value: str) -> Directive:
    return Directive(DirectiveOp.SET_STR, key, value)


def set_val(key: str, value: int) -> Directive:
    return Directive(DirectiveOp.SET_VAL, key, str(value))


@dataclass(frozen=True)
class PatchSpec:
    """
    A named patch and where to get it.

    ``sources`` are paths relative to the series patch URL, tried in order.
    ``local_name`` is the file name inside the patch directory.
    """
    local_name: str
    sources: Tuple[str, ...]

    @classmethod
    def simple(cls, name: str) -> "PatchSpec":
        return cls(local_name=name, sources=(name,))


@dataclass(frozen=True)
class BuildProfile:
    """Describes what to patch, how to configure and what to install."""

    profile_id: str

    # Patch set (ordered; later patches may assume earlier ones)
    patches: Tuple[PatchSpec, ...] = ()
    # Downloaded for manual use only, never applied
    reference_patches: Tuple[PatchSpec, ...] = ()

    # Config directives (ordered; last write wins per key)
    directives: Tuple[Directive, ...] = ()
    report_keys: Tuple[str, ...] = ()

    # Toolchain binaries checked before building (advice only)
    build_dependencies: Tuple[str, ...] = (
        "make", "clang", "ld.lld", "flex", "bison", "bc", "perl", "patch",
    )

    # Install
    loader_extra_drivers: Tuple[str, ...] = ()
    aux_module: Optional[str] = None
    aux_package: Optional[str] = None
    aux_package_query: Tuple[str, ...] = ()
    aux_install_hint: str = ""
    boot_entry_template: str = "Advanced options for Linux>Linux, with Linux {release}"
    alternate_entry_title: str = "Linux {release}"

    # Profile loop
    sampler_event: str = "br_inst_retired.near_taken:uppp"
    sampler_start_delay: float = 3.0

    @classmethod
    def voltdev(cls) -> "BuildProfile":
        """The locked default profile: CachyOS patches, Clang LTO, nvidia DKMS."""
        return cls(
            profile_id="voltdev-cachyos-clang",
            patches=(
                PatchSpec.simple("0001-amd-isp4.patch"),
                PatchSpec.simple("0002-bbr3.patch"),
                PatchSpec.simple("0003-cachy.patch"),
                PatchSpec.simple("0004-fixes.patch"),
                PatchSpec.simple("0005-t2.patch"),
                PatchSpec.simple("0006-vesa-dsc-bpp.patch"),
                PatchSpec.simple("0007-vmscape.patch"),
                PatchSpec(
                    "bore-cachy.patch",
                    ("sched/0001-bore-cachy.patch", "sched/0001-bore.patch"),
                ),
                PatchSpec("poc-selector.patch", ("misc/poc-selector.patch",)),
            ),
            reference_patches=(
                PatchSpec(
                    "nvidia/0001-Enable-atomic-kernel-modesetting-by-default.patch",
                    ("misc/nvidia/0001-Enable-atomic-kernel-modesetting-by-default.patch",),
                ),
                PatchSpec(
                    "nvidia/0002-Add-IBT-support.patch",
                    ("misc/nvidia/0002-Add-IBT-support.patch",),
                ),
                PatchSpec(
                    "nvidia/0003-Fix-compile-for-6.19.patch",
                    ("misc/nvidia/0003-Fix-compile-for-6.19.patch",),
                ),
            ),
            directives=_VOLTDEV_DIRECTIVES,
            report_keys=(
                "CONFIG_PREEMPT", "CONFIG_HZ", "CONFIG_ZONE_DEVICE",
                "CONFIG_DEVICE_PRIVATE", "CONFIG_HMM_MIRROR", "CONFIG_SCHED_BORE",
                "CONFIG_LTO_CLANG_THIN", "CONFIG_AUTOFDO_CLANG",
                "CONFIG_PROPELLER_CLANG",
            ),
            loader_extra_drivers=("nvidia", "nvidia_modeset", "nvidia_uvm", "nvidia_drm"),
            aux_module="nvidia",
            aux_package="nvidia-dkms",
            aux_package_query=("xbps-query", "nvidia-dkms"),
            aux_install_hint="Install with: sudo xbps-install -S dkms nvidia-dkms",
            boot_entry_template=(
                "Advanced options for Void GNU/Linux>"
                "Void GNU/Linux, with Linux {release}"
            ),
            alternate_entry_title="Linux {release} (CachyOS)",
        )


_VOLTDEV_DIRECTIVES: Tuple[Directive, ...] = (
    # CPU (Raptor Lake; native tuning with generic fallback)
    enable("CONFIG_MNATIVE_INTEL", "CONFIG_MARCH_NATIVE_INTEL", "CONFIG_GENERIC_CPU"),
    enable("CONFIG_X86_64"),
    enable("CONFIG_SMP"),
    set_val("CONFIG_NR_CPUS", 32),
    disable("CONFIG_X86_5LEVEL"),

    # Scheduler + preemption
    enable("CONFIG_SCHED_BORE"),
    set_val("CONFIG_SCHED_BORE_BURST_PENALTY_SCALE", 1280),
    enable("CONFIG_PREEMPT"),
    disable("CONFIG_PREEMPT_VOLUNTARY"),
    disable("CONFIG_PREEMPT_NONE"),
    enable("CONFIG_HZ_1000"),
    set_val("CONFIG_HZ", 1000),
    disable("CONFIG_HZ_100"),
    disable("CONFIG_HZ_250"),
    disable("CONFIG_HZ_300"),
    enable("CONFIG_NO_HZ_IDLE"),
    enable("CONFIG_NO_HZ_COMMON"),
    enable("CONFIG_SCHED_MC"),
    enable("CONFIG_SCHED_MC_PRIO"),
    enable("CONFIG_SCHED_SMT"),
    enable("CONFIG_SCHED_CLUSTER"),
    enable("CONFIG_SCHED_AUTOGROUP"),

    # nvidia driver requirements
    enable("CONFIG_ZONE_DEVICE"),
    enable("CONFIG_DEVICE_PRIVATE"),
    enable("CONFIG_MEMORY_HOTPLUG"),
    enable("CONFIG_MEMORY_HOTPLUG_DEFAULT_ONLINE"),
    enable("CONFIG_MEMORY_HOTREMOVE"),
    enable("CONFIG_HMM_MIRROR"),
    enable("CONFIG_MMU_NOTIFIER"),
    enable("CONFIG_DRM"),
    enable("CONFIG_DRM_KMS_HELPER"),
    module("CONFIG_DRM_NOUVEAU"),
    enable("CONFIG_DRM_FBDEV_EMULATION"),
    enable("CONFIG_FB"),
    enable("CONFIG_FB_EFI"),
    enable("CONFIG_FB_VESA"),
    enable("CONFIG_FRAMEBUFFER_CONSOLE"),

    # Memory management
    enable("CONFIG_TRANSPARENT_HUGEPAGE"),
    enable("CONFIG_TRANSPARENT_HUGEPAGE_ALWAYS"),
    enable("CONFIG_COMPACTION"),
    enable("CONFIG_KSM"),
    enable("CONFIG_LRU_GEN"),
    enable("CONFIG_LRU_GEN_ENABLED"),
    enable("CONFIG_ZSWAP"),
    enable("CONFIG_ZSWAP_DEFAULT_ON"),
    enable("CONFIG_ZSWAP_SHRINKER_DEFAULT_ON"),
    disable("CONFIG_ZSWAP_COMPRESSOR_DEFAULT_LZO"),
    enable("CONFIG_ZSWAP_COMPRESSOR_DEFAULT_ZSTD"),
    set_str("CONFIG_ZSWAP_COMPRESSOR_DEFAULT", "zstd"),
    enable("CONFIG_ZRAM"),
    disable("CONFIG_ZRAM_BACKEND_FORCE_LZO"),
    enable("CONFIG_ZRAM_BACKEND_ZSTD"),
    enable("CONFIG_ZRAM_DEF_COMP_ZSTD"),
    disable("CONFIG_ZRAM_DEF_COMP_LZORLE"),

    # I/O schedulers
    enable("CONFIG_MQ_IOSCHED_DEADLINE"),
    enable("CONFIG_MQ_IOSCHED_KYBER"),
    enable("CONFIG_BLK_CGROUP"),
    enable("CONFIG_IOSCHED_BFQ"),
    enable("CONFIG_BFQ_GROUP_IOSCHED"),

    # Network
    enable("CONFIG_TCP_CONG_BBR", "CONFIG_TCP_CONG_BBR2"),
    set_str("CONFIG_DEFAULT_TCP_CONG", "bbr"),

    # Security (balanced)
    enable("CONFIG_SECURITY"),
    enable("CONFIG_SECCOMP"),
    enable("CONFIG_SECCOMP_FILTER"),

    # CPU mitigations off
    disable("CONFIG_PAGE_TABLE_ISOLATION"),
    disable("CONFIG_RETPOLINE"),
    disable("CONFIG_MITIGATION_RETPOLINE"),
    disable("CONFIG_MITIGATION_RETHUNK"),
    disable("CONFIG_MITIGATION_UNRET_ENTRY"),
    disable("CONFIG_MITIGATION_CALL_DEPTH_TRACKING"),
    disable("CONFIG_MITIGATION_IBPB_ENTRY"),
    disable("CONFIG_MITIGATION_IBRS_ENTRY"),
    disable("CONFIG_MITIGATION_PAGE_TABLE_ISOLATION"),
    disable("CONFIG_MITIGATION_SPECTRE_V1"),
    disable("CONFIG_MITIGATION_SPECTRE_V2"),
    disable("CONFIG_MITIGATION_SPECTRE_BHI"),
    disable("CONFIG_MITIGATION_MDS"),
    disable("CONFIG_MITIGATION_TAA"),
    disable("CONFIG_MITIGATION_MMIO_STALE_DATA"),
    disable("CONFIG_MITIGATION_L1TF"),
    disable("CONFIG_MITIGATION_RETBLEED"),
    disable("CONFIG_MITIGATION_SRSO"),
    disable("CONFIG_MITIGATION_GDS"),
    disable("CONFIG_MITIGATION_RFDS"),
    disable("CONFIG_MITIGATION_SRBDS"),
    disable("CONFIG_MITIGATION_SSB"),
    disable("CONFIG_MITIGATION_ITS"),
    disable("CONFIG_MITIGATION_TSA"),
    disable("CONFIG_MITIGATION_VMSCAPE"),
    disable("CONFIG_X86_KERNEL_IBT"),

    # Debug off
    disable("CONFIG_DEBUG_INFO"),
    disable("CONFIG_DEBUG_INFO_DWARF4"),
    disable("CONFIG_DEBUG_INFO_DWARF5"),
    disable("CONFIG_DEBUG_INFO_BTF"),
    disable("CONFIG_DEBUG_KERNEL"),
    disable("CONFIG_SCHED_DEBUG"),
    disable("CONFIG_DEBUG_PREEMPT"),
    disable("CONFIG_FTRACE"),
    disable("CONFIG_FUNCTION_TRACER"),
    disable("CONFIG_STACK_TRACER"),
    disable("CONFIG_KPROBES"),
    disable("CONFIG_KPROBE_EVENTS"),
    disable("CONFIG_KALLSYMS"),
    disable("CONFIG_KALLSYMS_ALL"),

    # Modules (MODVERSIONS is turned off again by the LTO block below)
    enable("CONFIG_MODULES"),
    enable("CONFIG_MODULE_UNLOAD"),
    enable("CONFIG_MODULE_FORCE_UNLOAD"),
    enable("CONFIG_MODVERSIONS"),

    # Wireless
    module("CONFIG_IWLWIFI"),
    module("CONFIG_IWLMVM"),
    module("CONFIG_IWLMLD"),
    module("CONFIG_CFG80211"),
    module("CONFIG_MAC80211"),

    # Bluetooth
    module("CONFIG_BT"),
    enable("CONFIG_BT_BREDR"),
    enable("CONFIG_BT_LE"),
    module("CONFIG_BT_HCIBTUSB"),
    enable("CONFIG_BT_HCIBTUSB_AUTOSUSPEND"),
    module("CONFIG_BT_INTEL"),
    module("CONFIG_BT_RFCOMM"),
    enable("CONFIG_BT_RFCOMM_TTY"),
    module("CONFIG_BT_BNEP"),
    enable("CONFIG_BT_BNEP_MC_FILTER"),
    enable("CONFIG_BT_BNEP_PROTO_FILTER"),
    module("CONFIG_BT_HIDP"),
    enable("CONFIG_BT_LE_L2CAP_ECRED"),
    enable("CONFIG_BT_LEDS"),
    enable("CONFIG_BT_MSFTEXT"),
    enable("CONFIG_BT_AOSPEXT"),
    module("CONFIG_UHID"),
    module("CONFIG_HID_GENERIC"),

    # Media / camera
    enable("CONFIG_MEDIA_SUPPORT"),
    enable("CONFIG_MEDIA_CAMERA_SUPPORT"),
    enable("CONFIG_MEDIA_DIGITAL_TV_SUPPORT"),
    enable("CONFIG_VIDEO_DEV"),
    enable("CONFIG_VIDEO_V4L2"),
    module("CONFIG_VIDEO_V4L2_SUBDEV_API"),
    module("CONFIG_MEDIA_USB_SUPPORT"),
    enable("CONFIG_V4L2_MEM2MEM_DEV"),
    enable("CONFIG_MEDIA_CONTROLLER"),

    # Container networking
    module("CONFIG_BRIDGE"),
    enable("CONFIG_BRIDGE_IGMP_SNOOPING"),
    module("CONFIG_VETH"),
    module("CONFIG_VXLAN"),
    module("CONFIG_MACVLAN"),
    module("CONFIG_IPVLAN"),
    module("CONFIG_DUMMY"),
    enable("CONFIG_NETFILTER"),
    enable("CONFIG_NETFILTER_ADVANCED"),
    module("CONFIG_NETFILTER_XT_MATCH_CONNTRACK"),
    module("CONFIG_NETFILTER_XT_MATCH_ADDRTYPE"),
    module("CONFIG_NETFILTER_XT_MATCH_IPVS"),
    module("CONFIG_NF_CONNTRACK"),
    module("CONFIG_NF_NAT"),
    module("CONFIG_NF_NAT_IPV4"),
    module("CONFIG_IP_NF_IPTABLES"),
    module("CONFIG_IP_NF_FILTER"),
    module("CONFIG_IP_NF_NAT"),
    module("CONFIG_IP_NF_TARGET_MASQUERADE"),
    module("CONFIG_IP6_NF_IPTABLES"),
    module("CONFIG_IP6_NF_FILTER"),
    module("CONFIG_IP6_NF_NAT"),
    module("CONFIG_BRIDGE_NF_EBTABLES"),
    enable("CONFIG_BRIDGE_NETFILTER"),
    module("CONFIG_OVERLAY_FS"),
    enable("CONFIG_CGROUPS"),
    enable("CONFIG_CGROUP_DEVICE"),
    enable("CONFIG_CGROUP_FREEZER"),
    enable("CONFIG_CGROUP_PIDS"),
    enable("CONFIG_CGROUP_NET_CLASSID"),
    enable("CONFIG_CGROUP_NET_PRIO"),
    enable("CONFIG_CPUSETS"),
    enable("CONFIG_MEMCG"),

    # Virtualization
    enable("CONFIG_VIRTUALIZATION"),
    enable("CONFIG_KVM"),
    enable("CONFIG_KVM_INTEL"),

    # Gaming / Wine
    enable("CONFIG_FUTEX"),
    enable("CONFIG_FUTEX_PI"),
    enable("CONFIG_NTSYNC"),
    enable("CONFIG_USER_NS"),
    enable("CONFIG_NAMESPACES"),
    enable("CONFIG_USER_NS_UNPRIVILEGED"),

    # CachyOS features (present only with the cachy patch)
    enable("CONFIG_CACHY"),
    enable("CONFIG_CC_OPTIMIZE_FOR_PERFORMANCE_O3"),
    disable("CONFIG_CC_OPTIMIZE_FOR_PERFORMANCE"),
    disable("CONFIG_CC_OPTIMIZE_FOR_SIZE"),
    module("CONFIG_MQ_IOSCHED_ADIOS"),
    module("CONFIG_V4L2_LOOPBACK"),
    enable("CONFIG_ANON_MIN_RATIO"),
    enable("CONFIG_CLEAN_LOW_RATIO"),
    enable("CONFIG_CLEAN_MIN_RATIO"),
    enable("CONFIG_SCHED_POC_SELECTOR"),

    # Hardware crypto
    module("CONFIG_CRYPTO_AES_NI_INTEL"),
    module("CONFIG_CRYPTO_GHASH_CLMUL_NI_INTEL"),
    module("CONFIG_CRYPTO_SHA256"),
    module("CONFIG_CRYPTO_CRC32C"),

    # Clang ThinLTO; LTO requires MODVERSIONS and GCOV off
    disable("CONFIG_LTO_NONE"),
    enable("CONFIG_LTO_CLANG_THIN"),
    disable("CONFIG_MODVERSIONS"),
    disable("CONFIG_GCOV_KERNEL"),

    # Profile-guided optimization support
    enable("CONFIG_AUTOFDO_CLANG"),
    enable("CONFIG_PROPELLER_CLANG"),
)
