"""File corpus: walks the notes folder and reads notes with aiofiles."""

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Protocol, Sequence, runtime_checkable

import aiofiles
import aiofiles.os
from loguru import logger


@dataclass(frozen=True)
class FileStats:
    created: datetime
    modified: datetime


@runtime_checkable
class NoteCorpus(Protocol):
    """Read-only view of the note files the engine searches."""

    async def list_files(self) -> List[str]:
        ...

    async def read_file(self, path: str) -> str:
        ...

    async def stat_file(self, path: str) -> FileStats:
        ...


class FileCorpus:
    """
    Note files under ``root`` on the local file system.

    Only files with one of ``extensions`` are listed, and the templates
    folder is never descended into.
    """

    def __init__(
        self,
        root: Path,
        extensions: Sequence[str] = (".txt", ".md"),
        templates_folder: str = ".templates",
    ):
        self.root = Path(root)
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.templates_folder = templates_folder

    @classmethod
    def from_config(cls, config) -> "FileCorpus":
        return cls(config.notes_path, config.extensions, config.templates_folder)

    async def list_files(self) -> List[str]:
        if not self.root.is_dir():
            logger.warning(f"Notes folder does not exist: {self.root}")
            return []
        return await asyncio.to_thread(self._walk)

    def _walk(self) -> List[str]:
        files: List[str] = []

        def on_error(error: OSError) -> None:
            logger.error(f"Error reading directory {error.filename}: {error}")

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=on_error):
            dirnames[:] = sorted(d for d in dirnames if d != self.templates_folder)
            for name in sorted(filenames):
                if name.lower().endswith(self.extensions):
                    files.append(os.path.join(dirpath, name))
        return files

    async def read_file(self, path: str) -> str:
        async with aiofiles.open(path, 'r', encoding='utf-8', errors='replace') as f:
            return await f.read()

    async def stat_file(self, path: str) -> FileStats:
        st = await aiofiles.os.stat(path)
        created = getattr(st, 'st_birthtime', st.st_ctime)
        return FileStats(
            created=datetime.fromtimestamp(created),
            modified=datetime.fromtimestamp(st.st_mtime),
        )
