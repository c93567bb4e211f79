"""Filesystem locations used by docs-mcp."""

from __future__ import annotations

from pathlib import Path

CHUNKS_FILENAME = "chunks.json"
FILE_FINGERPRINTS_FILENAME = "file-fingerprints.json"
LANCE_DIRNAME = ".lancedb"


def get_user_settings_path() -> Path:
    """Get user-level settings.json path."""
    return Path.home() / ".docs-mcp" / "settings.json"


def get_project_settings_path(docs_dir: Path) -> Path:
    """Get corpus-level settings.json path."""
    return docs_dir / ".docs-mcp" / "settings.json"


def get_chunks_path(out_dir: Path) -> Path:
    return out_dir / CHUNKS_FILENAME


def get_file_fingerprints_path(out_dir: Path) -> Path:
    return out_dir / FILE_FINGERPRINTS_FILENAME


def get_lance_dir(out_dir: Path) -> Path:
    return out_dir / LANCE_DIRNAME


def list_markdown_files(docs_dir: Path) -> list[Path]:
    """All markdown files under docs_dir, skipping hidden directories."""
    files = []
    for path in docs_dir.rglob("*"):
        if path.suffix.lower() not in (".md", ".markdown") or not path.is_file():
            continue
        relative = path.relative_to(docs_dir)
        if any(part.startswith(".") for part in relative.parts[:-1]):
            continue
        files.append(path)
    return sorted(files)
