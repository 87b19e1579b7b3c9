"""Comments file I/O - reading and writing the .cowrite-comments.json snapshot."""

import json
import os
import tempfile
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from cowrite.models import Comment

_COMMENT_LIST = TypeAdapter(list[Comment])


def normalize_path(path: Path, project_root: Path) -> Path:
    """Resolve a file argument to an absolute path inside ``project_root``.

    Relative paths are taken relative to the project, not the working
    directory. Symlinks and ``..`` are resolved before the containment check.

    Raises:
        ValueError: If the resolved path is outside project_root
    """
    root = project_root.resolve()
    resolved = (root / path).resolve()  # an absolute ``path`` replaces ``root``
    if resolved != root and root not in resolved.parents:
        raise ValueError(f"Path is outside project root: {resolved} (root: {root})")
    return resolved


def read_comments(path: Path) -> list[Comment]:
    """
    Read and parse the persisted comments file.

    Args:
        path: Path to the comments JSON file

    Returns:
        Parsed and validated comments, in file order

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If JSON is invalid or fails schema validation
    """
    if not path.exists():
        raise FileNotFoundError(f"Comments file not found: {path}")

    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in comments file {path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Failed to read comments file {path}: {e}") from e

    try:
        return _COMMENT_LIST.validate_python(data)
    except ValidationError as e:
        raise ValueError(f"Comments file failed schema validation: {e}") from e


def dump_comments(comments: list[Comment]) -> str:
    """Serialize comments to the on-disk JSON text (2-space indent, trailing newline)."""
    data = [c.to_json_dict() for c in comments]
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_comments(path: Path, comments: list[Comment]) -> None:
    """
    Write the full comment set atomically.

    Uses temp file + rename so readers (the editor plugin, shell hooks,
    other cowrite processes) never see a partial file.

    Raises:
        OSError: If write or rename fails
    """
    atomic_write_text(dump_comments(comments), path)


def atomic_write_text(content: str, target_path: Path) -> None:
    """Write text content to target_path atomically.

    Args:
        content: Text content to write, written as-is
        target_path: Destination file path

    Raises:
        OSError: If write or rename fails
    """
    dir_path = target_path.parent
    dir_path.mkdir(parents=True, exist_ok=True)
    mode = target_path.stat().st_mode & 0o777 if target_path.exists() else 0o644

    # Same directory as the target so the rename stays on one filesystem
    fd, temp_name = tempfile.mkstemp(dir=dir_path, prefix=".tmp_", suffix=target_path.suffix)
    temp_path = Path(temp_name)

    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.chmod(temp_path, mode)
        temp_path.replace(target_path)
    except Exception as e:
        try:
            temp_path.unlink()
        except OSError:
            pass
        raise OSError(f"Failed to write {target_path}: {e}") from e
