from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import yaml

from agendasync.models import Record

logger = logging.getLogger(__name__)

RECORD_SUFFIXES = {".yaml", ".yml", ".json"}


def _hash_text(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()  # nosec B324


class InboxRecordSource:
    """Reads already-extracted records dropped into a directory.

    Each file holds one mapping (YAML or JSON). The file stem is the default
    record id and the content hash the default revision, so an edited file
    is seen as a new revision of the same record.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def list_records(self) -> list[Record]:
        if not self.directory.is_dir():
            return []
        paths = sorted(
            (path for path in self.directory.iterdir() if path.suffix.lower() in RECORD_SUFFIXES),
            key=lambda path: (path.stat().st_mtime, path.name),
        )
        records: list[Record] = []
        for path in paths:
            try:
                text = path.read_text(encoding="utf-8")
                data = yaml.safe_load(text)
            except (OSError, UnicodeDecodeError, yaml.YAMLError):
                logger.warning("Skipping unreadable record file %s", path, exc_info=True)
                continue
            if not isinstance(data, dict):
                logger.warning("Skipping record file %s: root is not a mapping", path)
                continue
            try:
                record = Record.from_dict(data, default_id=path.stem, default_revision=_hash_text(text))
            except ValueError:
                logger.warning("Skipping record file %s: invalid received_at", path)
                continue
            if record.record_id:
                records.append(record)
        return records
