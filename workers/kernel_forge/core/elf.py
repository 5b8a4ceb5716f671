"""
Binary helpers — content digests and ELF inspection via pyelftools.

Used for the compile receipt (image/config digests, vmlinux build-id),
deploy integrity checks, backup manifests and profiled-binary selection.
"""
import hashlib
import logging
from pathlib import Path
from typing import Optional

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

logger = logging.getLogger(__name__)


def hash_file(path: Path) -> str:
    """SHA-256 of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()


def is_elf(path: Path) -> bool:
    """True if *path* parses as an ELF file."""
    try:
        with open(path, "rb") as f:
            ELFFile(f)
        return True
    except (ELFError, OSError) as e:
        logger.debug("Not an ELF file: %s (%s)", path, e)
        return False


def read_build_id(path: Path) -> Optional[str]:
    """
    GNU build-id of an ELF file as hex, or None.

    Raises ELFError / OSError when *path* is not a readable ELF file.
    """
    with open(path, "rb") as f:
        elf = ELFFile(f)
        for section in elf.iter_sections():
            if section.name != ".note.gnu.build-id":
                continue
            for note in section.iter_notes():
                if note["n_type"] == "NT_GNU_BUILD_ID":
                    return note["n_desc"]
    return None
