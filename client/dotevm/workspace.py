"""Env files in a project directory."""

import logging
from pathlib import Path
from typing import Dict

from dotevm.errors import ValidationError

log = logging.getLogger(__name__)


def is_env_file_name(name: str) -> bool:
    """True for .env, .env.local, prod.env.backup and similar."""
    return name.startswith(".env") or ".env." in name


def validate_file_name(name: str) -> None:
    """Raise ValidationError unless name is a plain file name."""
    if not name or not name.strip():
        raise ValidationError("File name cannot be empty")
    if "/" in name or "\\" in name or name in (".", ".."):
        raise ValidationError(f"Invalid file name: {name}")


def scan_env_files(directory: Path) -> Dict[str, Path]:
    """Env files directly inside directory, by name."""
    found: Dict[str, Path] = {}
    if not directory.is_dir():
        return found
    for path in sorted(directory.iterdir()):
        if path.is_file() and is_env_file_name(path.name):
            found[path.name] = path
    log.debug("Found %d env file(s) in %s", len(found), directory)
    return found


def normalize_for_status(content: str) -> str:
    """Content with trailing whitespace removed from every line and from the end."""
    return "\n".join(line.rstrip() for line in content.splitlines()).rstrip()


def read_env_file(path: Path) -> str:
    """Content of an env file as UTF-8 text; ValidationError when it cannot be read as such."""
    path = Path(path)
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError(f"{path.name} is not UTF-8 text (bad byte at offset {e.start})") from e
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e
