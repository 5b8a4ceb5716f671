"""
Application configuration
"""
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings sourced from the environment and an optional .env file."""

    # Version identifier (must match CONFIG_LOCALVERSION in the kernel config)
    KERNEL_MAJOR: int = 6
    KERNEL_MINOR: int = 19
    KERNEL_PATCH: int = 2
    LOCAL_VERSION: str = "-voltdev"

    # Paths
    BUILD_DIR: Path = Path("build")
    PROFILE_DIR: Path = Path(".")
    INSTALL_ROOT: Path = Path("/")

    # Retrieval
    KERNEL_URL_BASE: str = "https://cdn.kernel.org/pub/linux/kernel"
    PATCHES_URL_BASE: str = "https://raw.githubusercontent.com/CachyOS/kernel-patches/master"
    DOWNLOAD_TIMEOUT: float = 60.0

    # Toolchain
    MAKE_JOBS: int | None = None  # defaults to os.cpu_count()
    MAKE_VARS: str = "LLVM=1"

    # Profile loop
    PROFILE_DURATION: int = 120  # seconds

    # Install
    CLEANUP_THRESHOLD: int = 2
    BUILD_PROFILE: str = "voltdev"

    class Config:
        env_file = ".env"
        case_sensitive = True
