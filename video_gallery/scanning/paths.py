"""
Canonical path identity.

Two textually different paths that reach the same file (symlinks, `..`,
mixed separators, and on case-insensitive filesystems mixed case) map to the
same key. Keys are plain strings so they can be stored and indexed in SQLite.
"""
import os
from pathlib import Path
from typing import Optional, Union

from .. import config
from ..exceptions import PathResolutionError

PathLike = Union[str, os.PathLike]


class PathResolver:
    def __init__(self, case_fold: bool = config.CASE_INSENSITIVE_PLATFORM):
        self.case_fold = case_fold

    def resolve(self, path: PathLike) -> Path:
        """
        Strict resolution: follows every symlink and fails if the target is gone.

        Raises:
            PathResolutionError: the path does not currently exist (or cannot be read).
        """
        try:
            return Path(path).expanduser().resolve(strict=True)
        except (OSError, RuntimeError) as e:
            # RuntimeError: symlink loop on older interpreters
            raise PathResolutionError(f"Cannot resolve {path}: {e}") from e

    def try_resolve(self, path: PathLike) -> Optional[Path]:
        try:
            return self.resolve(path)
        except PathResolutionError:
            return None

    def exists(self, path: PathLike) -> bool:
        resolved = self.try_resolve(path)
        return resolved is not None and resolved.is_file()

    def key(self, path: PathLike) -> str:
        """Normalizes an already-resolved path into its identity key (no filesystem access)."""
        text = os.path.normpath(os.path.abspath(os.fsdecode(path)))
        text = text.replace('\\', '/')
        if len(text) > 1:
            text = text.rstrip('/')
        if self.case_fold:
            text = text.casefold()
        return text

    def canonical_key(self, path: PathLike) -> str:
        return self.key(self.resolve(path))

    def root_key(self, root: PathLike) -> str:
        """Key for a watch root; falls back to the lexical path for roots that are gone."""
        resolved = self.try_resolve(root)
        return self.key(resolved if resolved is not None else root)

    @staticmethod
    def is_under(path_key: str, root_key: str) -> bool:
        if root_key == '/':
            return path_key.startswith('/')
        return path_key.startswith(root_key + '/')
