"""
Thin file operations over the bot-files root.

Every user-supplied name goes through path_guard first. Nested paths are only
produced by list_tree(). Concurrent writers to the same file are not
serialized here; the OS decides who wins.
"""

from __future__ import annotations

import datetime
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

from panel_errors import NotFoundError, ValidationError
from path_guard import resolve_inside

log = logging.getLogger("bot_panel.bot_files")

_UPLOAD_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass
class FileRecord:
    name: str
    size: int
    type: str
    modified: str
    is_directory: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "type": self.type,
            "modified": self.modified,
            "isDirectory": self.is_directory,
        }


def sanitize_upload_name(name: str) -> str:
    return _UPLOAD_NAME_RE.sub("_", name or "")


class BotFileStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    def ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def path_for(self, name: str) -> Path:
        return resolve_inside(self.root, name)

    def count_entries(self) -> int:
        if not self.root.is_dir():
            return 0
        return sum(1 for _ in self.root.iterdir())

    def list_tree(self) -> List[FileRecord]:
        """Every file and folder under the root, depth first, hidden files included."""
        if not self.root.is_dir():
            return []
        records: List[FileRecord] = []
        self._walk(self.root, records)
        return records

    def _walk(self, directory: Path, records: List[FileRecord]) -> None:
        # lstat only: symlinks are listed as plain entries and never followed
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
        for entry in entries:
            path = Path(entry.path)
            rel = path.relative_to(self.root).as_posix()
            try:
                st = entry.stat(follow_symlinks=False)
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError as e:
                log.warning("skipping %s in listing: %s", rel, e)
                continue
            modified = datetime.datetime.fromtimestamp(st.st_mtime).isoformat(timespec="seconds")
            if is_dir:
                records.append(FileRecord(rel, 0, "folder", modified, True))
                try:
                    self._walk(path, records)
                except OSError as e:
                    log.warning("cannot list %s: %s", rel, e)
            else:
                records.append(FileRecord(rel, int(st.st_size), path.suffix, modified, False))

    def read_text(self, name: str) -> Tuple[str, int]:
        path = self.path_for(name)
        if not path.exists():
            raise NotFoundError("File not found")
        if path.is_dir():
            raise ValidationError("Cannot read directory content")
        content = path.read_text(encoding="utf-8", errors="replace")
        return content, int(path.stat().st_size)

    def write_text(self, name: str, content: str) -> None:
        path = self.path_for(name)
        if not path.exists():
            raise NotFoundError("File not found")
        if path.is_dir():
            raise ValidationError("Cannot write directory content")
        path.write_text(content, encoding="utf-8")

    def create(self, name: str, content: str = "", is_folder: bool = False) -> Path:
        path = self.path_for(name)
        if path.exists():
            raise ValidationError("File or folder already exists")
        self.ensure_root()
        if is_folder:
            path.mkdir()
        else:
            path.write_text(content or "", encoding="utf-8")
        return path

    def delete(self, name: str) -> bool:
        """Remove a file or a whole folder. Returns True when a folder was removed."""
        path = self.path_for(name)
        if not path.exists() and not path.is_symlink():
            raise NotFoundError("File not found")
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
            return True
        path.unlink()
        return False

    def save_upload(self, storage) -> Tuple[str, int]:
        """Store a werkzeug FileStorage under its sanitized name, overwriting."""
        name = sanitize_upload_name(getattr(storage, "filename", "") or "")
        path = self.path_for(name)
        self.ensure_root()
        storage.save(str(path))
        return name, int(path.stat().st_size)

    def archive_path(self, name: str) -> Path:
        path = self.path_for(name)
        if not path.is_file():
            raise NotFoundError("ZIP file not found")
        if path.suffix.lower() != ".zip":
            raise ValidationError("File is not a ZIP archive")
        return path
