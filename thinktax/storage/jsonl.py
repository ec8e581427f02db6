"""
Line-delimited JSON helpers.

Reads are tolerant: blank lines and lines that fail to parse are skipped.
Writes replace the target file atomically.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Union

from thinktax.config.logger import get_logger

LOGGER = get_logger("thinktax.storage.jsonl")

PathLike = Union[str, Path]


def iter_jsonl(path: PathLike) -> Iterator[Dict[str, Any]]:
    """Yield each JSON object in a JSONL file.

    A missing file yields nothing. Non-object lines are skipped along
    with unparsable ones.
    """
    file_path = Path(path)
    if not file_path.is_file():
        return
    with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            try:
                record = json.loads(stripped)
            except ValueError:
                LOGGER.debug("Skipping malformed line in %s", file_path)
                continue
            if isinstance(record, dict):
                yield record


def read_jsonl(path: PathLike) -> List[Dict[str, Any]]:
    return list(iter_jsonl(path))


def dumps_line(record: Dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"


def write_jsonl(path: PathLike, records: Iterable[Dict[str, Any]]) -> None:
    """Replace ``path`` with one line per record."""
    atomic_write_text(path, "".join(dumps_line(record) for record in records))


def atomic_write_text(path: PathLike, content: str) -> None:
    """Write the whole file or nothing.

    Content goes to a temporary file in the same directory which then
    replaces the target, so readers never see a partial file.

    Raises:
        OSError: If the write fails (disk full, permissions)
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
