"""Persistent JSON configuration: edit-log names per file and known structs."""

from __future__ import annotations

import collections.abc as cabc
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
BASE_DIR_NAME = ".hexstruct"
UNDO_PREFIX = "undo-"


class ConfigError(ValueError):
    """Raised when the configuration file cannot be read or validated."""


def default_base_dir() -> Path:
    """Return ``~/.hexstruct``."""
    return Path.home() / BASE_DIR_NAME


@dataclass(frozen=True)
class StructEntry:
    """A struct listed in the configuration."""

    name: str
    path: Path


class Config:
    """In-memory view of ``config.json`` tied to its base directory."""

    def __init__(
        self,
        base_dir: Path,
        files: dict[str, str] | None = None,
        structs: cabc.Sequence[StructEntry] = (),
    ) -> None:
        self.base_dir = base_dir
        self.files = dict(files or {})
        self.structs = list(structs)

    @property
    def path(self) -> Path:
        return self.base_dir / CONFIG_FILE

    @classmethod
    def load(cls, base_dir: str | os.PathLike[str] | None = None) -> Config:
        """Read the configuration, creating the directory and file if needed."""
        root = Path(base_dir) if base_dir is not None else default_base_dir()
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"Failed to create {root}: {exc}") from exc

        config = cls(root)
        if not config.path.exists() or config.path.stat().st_size == 0:
            config.save()
            return config

        try:
            raw = json.loads(config.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"{config.path}: {exc}") from exc
        if not isinstance(raw, cabc.Mapping):
            raise ConfigError(f"{config.path}: expected a JSON object")
        config.files = _parse_files(raw.get("files", {}), config.path)
        config.structs = _parse_structs(raw.get("structs", []), root, config.path)
        return config

    def to_json(self) -> dict[str, object]:
        return {
            "files": {
                name: {"undo_file_name": undo} for name, undo in sorted(self.files.items())
            },
            "structs": [
                {"name": entry.name, "path": str(entry.path)} for entry in self.structs
            ],
        }

    def save(self) -> None:
        """Rewrite ``config.json`` in place, truncating only after the write."""
        text = json.dumps(self.to_json(), indent=2) + "\n"
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        with os.fdopen(fd, "r+", encoding="utf-8") as stream:
            stream.write(text)
            stream.truncate(stream.tell())

    def _next_undo_name(self) -> str:
        used = set(self.files.values())
        index = 0
        while True:
            name = f"{UNDO_PREFIX}{index}"
            if name not in used and not (self.base_dir / name).exists():
                return name
            index += 1

    def undo_path_for(self, filename: str | os.PathLike[str]) -> Path:
        """Return the edit-log path for ``filename``, allocating one if new."""
        key = os.path.abspath(os.fspath(filename))
        if key not in self.files:
            self.files[key] = self._next_undo_name()
            logger.info("Assigned edit log %s to %s", self.files[key], key)
            self.save()
        return self.base_dir / self.files[key]


def _parse_files(raw: object, where: Path) -> dict[str, str]:
    if not isinstance(raw, cabc.Mapping):
        raise ConfigError(f"{where}: 'files' must be an object")
    files: dict[str, str] = {}
    for name, entry in raw.items():
        undo = entry.get("undo_file_name") if isinstance(entry, cabc.Mapping) else None
        if not isinstance(undo, str) or not undo or os.sep in undo:
            raise ConfigError(f"{where}: invalid undo_file_name for {name!r}")
        files[name] = undo
    return files


def _parse_structs(raw: object, root: Path, where: Path) -> list[StructEntry]:
    if not isinstance(raw, list):
        raise ConfigError(f"{where}: 'structs' must be a list")
    entries: list[StructEntry] = []
    for item in raw:
        if not isinstance(item, cabc.Mapping) or not isinstance(item.get("path"), str):
            raise ConfigError(f"{where}: struct entries need a 'path'")
        path = Path(item["path"]).expanduser()
        if not path.is_absolute():
            path = root / path
        name = item.get("name") or path.stem
        entries.append(StructEntry(str(name), path))
    return entries
