from __future__ import annotations

import os
from pathlib import Path

import pytest

from opencraw.adapters.tools.filesystem import FilesystemTool, resolve_in_root
from opencraw.core.errors import ExecutionFailedError, InvalidArgumentsError, UnauthorizedError


@pytest.fixture
def tool(tmp_path):
    return FilesystemTool(root=tmp_path)


async def test_write_then_read(tool, tmp_path):
    result = await tool.execute({"action": "write_file", "path": "notes/a.txt", "content": "hi"})
    assert result == {"status": "ok"}
    assert (tmp_path / "notes" / "a.txt").read_text() == "hi"

    result = await tool.execute({"action": "read_file", "path": "notes/a.txt"})
    assert result == {"content": "hi"}


async def test_write_requires_content(tool):
    with pytest.raises(InvalidArgumentsError):
        await tool.execute({"action": "write_file", "path": "a.txt"})


async def test_list_dir_is_sorted(tool, tmp_path):
    for name in ("b.txt", "a.txt", "c"):
        (tmp_path / name).write_text("")
    result = await tool.execute({"action": "list_dir", "path": "."})
    assert result == {"entries": ["a.txt", "b.txt", "c"]}


async def test_search_files_matches_names_recursively(tool, tmp_path):
    (tmp_path / "src" / "pkg").mkdir(parents=True)
    (tmp_path / "src" / "pkg" / "mod.py").write_text("")
    (tmp_path / "src" / "README.md").write_text("")
    result = await tool.execute({"action": "search_files", "path": "src", "pattern": r"\.py$"})
    assert result == {"matches": ["src/pkg/mod.py"]}


async def test_search_rejects_bad_regex(tool):
    with pytest.raises(InvalidArgumentsError, match="invalid regex"):
        await tool.execute({"action": "search_files", "path": ".", "pattern": "("})


async def test_oversized_file_is_refused(tmp_path):
    (tmp_path / "big.bin").write_bytes(b"x" * 20)
    tool = FilesystemTool(root=tmp_path, file_bytes_max=10)
    with pytest.raises(ExecutionFailedError, match="file too large"):
        await tool.execute({"action": "read_file", "path": "big.bin"})


async def test_huge_file_is_refused_after_a_bounded_read(tmp_path, monkeypatch):
    limit = 1024
    with (tmp_path / "huge.bin").open("wb") as f:
        f.truncate(limit * 1000)

    def no_full_read(self):
        raise AssertionError("whole file read")

    monkeypatch.setattr(Path, "read_bytes", no_full_read)
    tool = FilesystemTool(root=tmp_path, file_bytes_max=limit)
    with pytest.raises(ExecutionFailedError, match=f"file too large: {limit * 1000} bytes"):
        await tool.execute({"action": "read_file", "path": "huge.bin"})


async def test_missing_file_raises_os_error(tool):
    with pytest.raises(FileNotFoundError):
        await tool.execute({"action": "read_file", "path": "nope.txt"})


@pytest.mark.parametrize(
    ("path", "message"),
    [
        ("/etc/passwd", "absolute paths are not allowed"),
        ("../etc/passwd", "path traversal is not allowed"),
        ("a/../../b", "path traversal is not allowed"),
    ],
)
def test_paths_outside_root_are_refused(tmp_path, path, message):
    with pytest.raises(UnauthorizedError, match=message):
        resolve_in_root(tmp_path, path)


def test_symlink_escape_is_refused(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink(outside, root / "link")
    with pytest.raises(UnauthorizedError, match="path escapes the sandbox root"):
        resolve_in_root(root, "link/secret.txt")
