"""Classification of backtrace file paths into project, filtered and library code."""

from enum import Enum
from typing import Iterable

# File names that appear in backtraces but are not really files
META_FILE_NAMES = frozenset({"(irb)", "(eval)", "-e"})


class PathType(str, Enum):
    PROJECT = "project"
    FILTERED = "filtered"
    LIBRARY = "library"


class PathClassifier:
    """Classifies files using a project's filter and whitelist path prefixes.

    Whitelisted prefixes win over filtered ones, so a project can filter
    `vendor/` while still blaming `vendor/our_fork/`.
    """

    def __init__(self, filter_paths: Iterable[str] = (), whitelist_paths: Iterable[str] = ()):
        self.filter_paths = tuple(filter_paths or ())
        self.whitelist_paths = tuple(whitelist_paths or ())

    @classmethod
    def for_project(cls, project) -> "PathClassifier":
        return cls(project.filter_paths, project.whitelist_paths)

    def classify(self, file: str) -> PathType:
        # Absolute paths lie outside the project root
        if not file or file.startswith("/") or file in META_FILE_NAMES:
            return PathType.LIBRARY
        if self.filter_paths and file.startswith(self.filter_paths):
            if not (self.whitelist_paths and file.startswith(self.whitelist_paths)):
                return PathType.FILTERED
        return PathType.PROJECT
