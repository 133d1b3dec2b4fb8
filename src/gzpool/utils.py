from __future__ import annotations

import os
import tarfile
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path


class ArchiveError(RuntimeError):
    pass


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def extract_archive(archive: Path, destination: Path) -> list[str]:
    """Expand a tar archive (any compression tarfile understands) into ``destination``.

    Returns the member names that were extracted.
    """
    if not archive.exists():
        raise ArchiveError(f"archive does not exist: {archive}")
    if not archive.is_file():
        raise ArchiveError(f"archive is not a regular file: {archive}")
    if not os.access(archive, os.R_OK):
        raise ArchiveError(f"no read permission for archive: {archive}")

    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, mode="r:*") as bundle:
            members = bundle.getmembers()
            bundle.extractall(destination, members=members, filter="data")
    except (tarfile.TarError, EOFError, OSError) as exc:
        raise ArchiveError(f"failed to expand {archive}: {exc}") from exc
    return [member.name for member in members]


def iter_candidate_files(root: Path) -> Iterator[str]:
    """Yield regular files under ``root`` as relative POSIX paths, sorted, hidden entries skipped."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        base = Path(dirpath)
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = base / name
            if path.is_symlink() or not path.is_file():
                continue
            yield path.relative_to(root).as_posix()
