"""
File collection for backups.

Resolves include/exclude configuration into the set of files to back up.
Every path (includes, excludes and visited entries) is normalised the same
way: absolute, symlinks resolved, forward slashes, no trailing slash.
Exclusions always win over inclusions.
"""

import os
import re
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .errors import FileAccessError, DirectoryScanError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEntry:
    relative_path: str
    absolute_path: str
    size: int
    readable: bool = True


def normalize_path(path: str, base_path: Optional[str] = None) -> str:
    """
    Normalise a path for comparison.

    Wildcard patterns are only slash-normalised, never resolved against the
    filesystem.

    Args:
        path: Path or wildcard pattern
        base_path: Directory that relative paths are resolved against

    Returns:
        Normalised path
    """
    path = path.replace('\\', '/')

    if '*' not in path:
        if base_path and not os.path.isabs(path):
            path = os.path.join(base_path, path)
        path = os.path.realpath(path) if os.path.exists(path) else os.path.abspath(path)
        path = path.replace('\\', '/')

    return path.rstrip('/') or '/'


def format_size(size: int) -> str:
    """Format a byte count for humans (e.g. '1.5 MB')."""
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if value < 1024 or unit == 'TB':
            return f"{int(value)} {unit}" if unit == 'B' else f"{value:.1f} {unit}"
        value /= 1024


class FileCollector:
    """
    Collects the files selected by include and exclude rules.

    Directories are walked depth-first with an explicit stack. An entry is
    excluded when it equals an exclude root, lies under one, or matches a
    wildcard exclude over its full path (``*`` matches any sequence).
    """

    def __init__(
        self,
        includes: List[str],
        excludes: Optional[List[str]] = None,
        base_path: Optional[str] = None,
        follow_links: bool = False,
        ignore_unreadable: bool = True
    ):
        """
        Initialize file collector.

        Args:
            includes: Files or directories to back up
            excludes: Paths or wildcard patterns to leave out
            base_path: Root that archive paths are made relative to
            follow_links: Descend into symlinked directories
            ignore_unreadable: Skip unreadable entries instead of failing
        """
        self.base_path = normalize_path(base_path or os.getcwd())
        self.includes = [normalize_path(p, self.base_path) for p in includes]
        self.follow_links = follow_links
        self.ignore_unreadable = ignore_unreadable
        self.skipped_count = 0

        self._exclude_roots = set()
        self._exclude_patterns = []
        for pattern in excludes or []:
            normalised = normalize_path(pattern, self.base_path)
            if '*' in normalised:
                regex = '.*'.join(re.escape(part) for part in normalised.split('*'))
                self._exclude_patterns.append(re.compile(f'^{regex}$'))
            else:
                self._exclude_roots.add(normalised)

    def is_excluded(self, path: str) -> bool:
        if path in self._exclude_roots:
            return True
        for root in self._exclude_roots:
            if path.startswith(root.rstrip('/') + '/'):
                return True
        return any(pattern.match(path) for pattern in self._exclude_patterns)

    def relative_path(self, path: str) -> str:
        """
        Path relative to the base path; entries outside the base keep their
        bare filename.
        """
        prefix = self.base_path.rstrip('/') + '/'
        if path.startswith(prefix):
            return path[len(prefix):]
        return os.path.basename(path)

    def _skip(self, message: str, error_class, path: str):
        if not self.ignore_unreadable:
            raise error_class(message, path=path)
        self.skipped_count += 1
        logger.warning(f"{message}, skipping")

    def _file_entry(self, path: str, resolved: Optional[str] = None) -> Optional[FileEntry]:
        resolved = resolved or path
        try:
            size = os.stat(resolved).st_size
        except OSError:
            self._skip(f"File vanished or is not accessible: {path}", FileAccessError, path)
            return None

        if not os.access(resolved, os.R_OK):
            self._skip(f"File is not readable: {path}", FileAccessError, path)
            return None

        return FileEntry(self.relative_path(path), resolved, size, True)

    def iter_entries(self) -> Iterator[FileEntry]:
        """
        Yield every selected file.

        Each call starts a fresh traversal, so the sequence can be iterated
        more than once.

        Raises:
            FileAccessError: If a file cannot be read and ignore_unreadable is off
            DirectoryScanError: If a directory cannot be listed and ignore_unreadable is off
        """
        self.skipped_count = 0

        for include in self.includes:
            if self.is_excluded(include):
                continue

            if os.path.isfile(include):
                entry = self._file_entry(include)
                if entry:
                    yield entry
                continue

            if not os.path.isdir(include):
                logger.warning(f"Include path does not exist: {include}")
                continue

            yield from self._walk(include)

    def _walk(self, root: str) -> Iterator[FileEntry]:
        visited = {normalize_path(root)}
        stack = [root]

        while stack:
            current = stack.pop()

            try:
                with os.scandir(current) as it:
                    children = sorted(it, key=lambda e: e.name)
            except OSError:
                self._skip(f"Directory is not readable: {current}", DirectoryScanError, current)
                continue

            subdirs = []
            for child in children:
                if child.name in ('.', '..'):
                    continue

                path = f"{current.rstrip('/')}/{child.name}"
                resolved = normalize_path(path)
                if self.is_excluded(path) or self.is_excluded(resolved):
                    continue

                try:
                    is_link = child.is_symlink()
                    is_dir = child.is_dir(follow_symlinks=True)
                except OSError:
                    self._skip(f"Entry vanished: {path}", FileAccessError, path)
                    continue

                if is_dir:
                    if is_link:
                        if not self.follow_links:
                            continue
                        if resolved in visited:
                            continue
                        visited.add(resolved)
                    subdirs.append(path)
                else:
                    entry = self._file_entry(path, resolved)
                    if entry:
                        yield entry

            # Reversed so the first subdirectory is walked next
            stack.extend(reversed(subdirs))

    def collect(self) -> Dict[str, str]:
        """
        Map relative archive paths to absolute source paths.

        Returns:
            Dict in traversal order
        """
        return {entry.relative_path: entry.absolute_path for entry in self.iter_entries()}

    def get_total_size(self) -> int:
        return sum(entry.size for entry in self.iter_entries())

    def get_file_count(self) -> int:
        return sum(1 for _ in self.iter_entries())

    def estimate(self) -> Dict[str, object]:
        """
        Estimate the size of the file part of a backup.

        Returns:
            Dict with file_count, total_size and human readable size
        """
        file_count = 0
        total_size = 0
        for entry in self.iter_entries():
            file_count += 1
            total_size += entry.size

        return {
            'file_count': file_count,
            'total_size': total_size,
            'human_size': format_size(total_size),
            'skipped': self.skipped_count,
        }

    def missing_includes(self) -> List[str]:
        return [path for path in self.includes if '*' not in path and not os.path.exists(path)]
