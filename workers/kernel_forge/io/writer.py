"""
Writer — serialize reports and receipts to JSON files.

Filesystem layout::

    <build_dir>/reports/build-<full>-<stamp>.json
    <build_dir>/reports/install-<full>-<stamp>.json
    <build_dir>/reports/profile-<full>-<stamp>.json
    <kernel_dir>/build_receipt.json
    <boot>/backup-<release>-<stamp>/backup_manifest.json

Every file is written to a temporary sibling and renamed into place, so a
reader never observes a half-written JSON document.
"""
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Type, TypeVar

from pydantic import BaseModel

M = TypeVar("M", bound=BaseModel)


def write_model(model: BaseModel, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(
        json.dumps(
            model.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    os.replace(tmp, path)
    return path


def read_model(cls: Type[M], path: Path) -> Optional[M]:
    """Load *path* as *cls*; None if the file does not exist."""
    if not path.is_file():
        return None
    return cls.model_validate_json(path.read_text())


def write_report(model: BaseModel, reports_dir: Path, kind: str, release: str) -> Path:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return write_model(model, reports_dir / f"{kind}-{release}-{stamp}.json")
