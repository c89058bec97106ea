"""
ZIP ingestion for uploaded bot archives.

Extraction is best effort: the archive must open, but a single bad entry is
logged and skipped so the rest of the tree still lands on disk.
"""

from __future__ import annotations

import io
import os
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional

from log_sink import LogSink
from panel_errors import ArchiveError

METADATA_MARKER = "__MACOSX"

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


@dataclass
class ArchiveEntry:
    relative_path: str
    is_directory: bool
    info: zipfile.ZipInfo


@dataclass
class ExtractionResult:
    extracted_count: int = 0
    total_entries: int = 0
    extracted_paths: List[str] = field(default_factory=list)
    verified_paths: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "extractedCount": self.extracted_count,
            "total": self.total_entries,
            "files": list(self.extracted_paths),
            "verifiedFiles": list(self.verified_paths),
        }


def is_metadata_entry(name: str) -> bool:
    return METADATA_MARKER in name or name.startswith(".")


def safe_relative_path(name: str) -> Optional[str]:
    """Normalize an archive member name, or return None if it could escape the destination."""
    cleaned = name.replace("\\", "/")
    if cleaned.startswith("/") or _DRIVE_RE.match(cleaned):
        return None
    parts = [p for p in PurePosixPath(cleaned).parts if p not in ("", ".")]
    if not parts or ".." in parts:
        return None
    return "/".join(parts)


def _inside(root: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(root)
    except ValueError:
        return False
    return True


def _read_entries(zf: zipfile.ZipFile, sink: LogSink, actor: str) -> List[ArchiveEntry]:
    entries: List[ArchiveEntry] = []
    for info in zf.infolist():
        name = info.filename
        if is_metadata_entry(name):
            sink.append(f"Skipping: {name}", "info", actor)
            continue
        rel = safe_relative_path(name)
        if rel is None:
            sink.append(f"Skipping unsafe path in archive: {name}", "warning", actor)
            continue
        entries.append(ArchiveEntry(relative_path=rel, is_directory=info.is_dir(), info=info))
    return entries


def list_files(root: Path) -> List[str]:
    found: List[str] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for fn in filenames:
            rel = Path(dirpath, fn).relative_to(root)
            found.append(rel.as_posix())
    found.sort()
    return found


def extract_archive(archive_bytes: bytes, destination_root: Path, sink: LogSink, actor: str = "system") -> ExtractionResult:
    root = Path(destination_root)
    root.mkdir(parents=True, exist_ok=True)
    root = root.resolve()

    try:
        zf = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as e:
        sink.append(f"ZIP extraction failed: {e}", "error", actor)
        raise ArchiveError(f"Failed to extract ZIP: {e}")

    result = ExtractionResult()
    with zf:
        result.total_entries = len(zf.infolist())
        sink.append(f"Starting ZIP extraction: {result.total_entries} entries found", "info", actor)
        entries = _read_entries(zf, sink, actor)

        # Pass 1: directories
        for entry in entries:
            if not entry.is_directory:
                continue
            target = root / entry.relative_path
            if not _inside(root, target):
                sink.append(f"Skipping unsafe path in archive: {entry.info.filename}", "warning", actor)
                continue
            try:
                if not target.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    sink.append(f"Created directory: {entry.relative_path}", "success", actor)
            except OSError as e:
                sink.append(f"Error creating directory {entry.relative_path}: {e}", "error", actor)

        # Pass 2: files (parents may be missing or listed later)
        for entry in entries:
            if entry.is_directory:
                continue
            target = root / entry.relative_path
            if not _inside(root, target):
                sink.append(f"Skipping unsafe path in archive: {entry.info.filename}", "warning", actor)
                continue
            try:
                parent = target.parent
                if not parent.is_dir():
                    parent.mkdir(parents=True, exist_ok=True)
                    sink.append(f"Created parent directory: {parent.relative_to(root).as_posix()}", "info", actor)

                payload = zf.read(entry.info)
                target.write_bytes(payload)
                result.extracted_count += 1
                result.extracted_paths.append(entry.relative_path)
                sink.append(f"Extracted file: {entry.relative_path} ({len(payload)} bytes)", "success", actor)
            except (OSError, zipfile.BadZipFile, RuntimeError, NotImplementedError, zlib.error) as e:
                sink.append(f"Error extracting {entry.relative_path}: {e}", "error", actor)
                continue

            if target.is_file():
                sink.append(f"Verified: {entry.relative_path} - {target.stat().st_size} bytes", "info", actor)
            else:
                sink.append(f"WARNING: File not found after extraction: {entry.relative_path}", "warning", actor)

    sink.append(
        f"Extraction complete: {result.extracted_count} files extracted from {result.total_entries} total entries",
        "success", actor,
    )
    result.verified_paths = list_files(root)
    sink.append(f"Total files in directory after extraction: {len(result.verified_paths)}", "info", actor)
    return result
