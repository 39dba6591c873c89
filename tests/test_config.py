# pyright: reportUnknownMemberType=false, reportPrivateUsage=false

import json
from pathlib import Path

import pytest

from hexstruct_editor.config import Config, ConfigError, StructEntry


def test_load_creates_directory_and_file(tmp_path: Path) -> None:
    base = tmp_path / "cfg"

    config = Config.load(base)

    assert config.path.exists()
    assert json.loads(config.path.read_text()) == {"files": {}, "structs": []}


def test_undo_names_are_allocated_and_persisted(tmp_path: Path) -> None:
    base = tmp_path / "cfg"
    (tmp_path / "a.bin").write_bytes(b"a")
    (tmp_path / "b.bin").write_bytes(b"b")
    config = Config.load(base)
    (base / "undo-0").write_bytes(b"stale")

    first = config.undo_path_for(tmp_path / "a.bin")
    second = config.undo_path_for(tmp_path / "b.bin")

    assert first == base / "undo-1"
    assert second == base / "undo-2"
    assert config.undo_path_for(tmp_path / "a.bin") == first

    reloaded = Config.load(base)
    assert reloaded.files[str(tmp_path / "a.bin")] == "undo-1"


def test_save_truncates_shorter_content(tmp_path: Path) -> None:
    config = Config.load(tmp_path)
    config.files = {f"/file/{i}": f"undo-{i}" for i in range(20)}
    config.save()

    config.files = {}
    config.save()

    assert json.loads(config.path.read_text()) == {"files": {}, "structs": []}


def test_struct_entries(tmp_path: Path) -> None:
    (tmp_path / "config.json").write_text(
        json.dumps(
            {
                "files": {},
                "structs": [
                    {"name": "elf", "path": "structs/elf.json"},
                    {"path": "/abs/mbr.bin"},
                ],
            }
        )
    )

    config = Config.load(tmp_path)

    assert config.structs == [
        StructEntry("elf", tmp_path / "structs" / "elf.json"),
        StructEntry("mbr", Path("/abs/mbr.bin")),
    ]


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        json.dumps({"files": []}),
        json.dumps({"files": {"/x": {}}}),
        json.dumps({"files": {"/x": {"undo_file_name": "../escape"}}}),
        json.dumps({"structs": [{"name": "x"}]}),
    ],
)
def test_invalid_config(tmp_path: Path, content: str) -> None:
    (tmp_path / "config.json").write_text(content)

    with pytest.raises(ConfigError):
        Config.load(tmp_path)
