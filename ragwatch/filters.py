"""Indexing policy and the file/directory filters built on it.

The same rules are used by the bulk walker and by the file watcher, so a file
is either eligible everywhere or nowhere:

- Hidden files and directories (dot-prefixed) are skipped
- Symlinks are skipped
- Only allow-listed extensions are indexed
- Configured exclude patterns (gitignore syntax) plus the excludes of every
  project type detected in the root are honoured
- ``.gitignore`` in the project root is honoured when enabled
- Binary files (null byte in the first 8KB) are skipped
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path

import pathspec

DEFAULT_EXTENSIONS = frozenset(
    {
        "java", "kt", "kts", "py", "js", "ts", "jsx", "tsx", "go", "rs", "c",
        "cpp", "h", "hpp", "cs", "rb", "php", "swift", "scala", "groovy", "sh",
        "bash", "yaml", "yml", "json", "xml", "md", "txt", "gradle",
        "properties", "toml",
    }
)  # fmt: skip

DEFAULT_COMMON_EXCLUDES = (
    ".git/",
    ".svn/",
    ".hg/",
    ".idea/",
    ".vscode/",
    ".DS_Store",
    "*.log",
    "*.tmp",
    "*.temp",
    "*.swp",
    "*.bak",
    ".history/",
)


@dataclass(frozen=True)
class ProjectType:
    """A build system recognised by marker files in the project root."""

    name: str
    markers: frozenset[str]
    exclude_paths: tuple[str, ...]


DEFAULT_PROJECT_TYPES = (
    ProjectType(
        "Gradle",
        frozenset({"build.gradle", "build.gradle.kts", "settings.gradle", "settings.gradle.kts", "gradlew"}),
        ("build/", ".gradle/", "out/", "bin/", ".kotlintest/", ".kotlin/"),
    ),
    ProjectType(
        "Maven",
        frozenset({"pom.xml", "mvnw"}),
        ("target/", ".mvn/", "out/", "bin/"),
    ),
    ProjectType(
        "Node.js",
        frozenset({"package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml"}),
        ("node_modules/", "dist/", "build/", ".next/", ".nuxt/", "out/", "coverage/",
         ".cache/", ".parcel-cache/", ".turbo/", ".vite/"),
    ),
    ProjectType(
        "Python",
        frozenset({"requirements.txt", "setup.py", "pyproject.toml", "Pipfile", "poetry.lock"}),
        ("__pycache__/", "*.pyc", "*.pyo", "*.pyd", ".pytest_cache/", ".mypy_cache/",
         ".tox/", "venv/", "env/", ".venv/", ".env/", "dist/", "build/",
         "*.egg-info/", ".eggs/"),
    ),
    ProjectType(
        "Go",
        frozenset({"go.mod", "go.sum"}),
        ("vendor/", "bin/", "pkg/"),
    ),
    ProjectType(
        "Rust",
        frozenset({"Cargo.toml", "Cargo.lock"}),
        ("target/", "Cargo.lock"),
    ),
    ProjectType(
        "Ruby",
        frozenset({"Gemfile", "Gemfile.lock", "Rakefile"}),
        ("vendor/", ".bundle/", "tmp/", "log/"),
    ),
    ProjectType(
        "PHP/Composer",
        frozenset({"composer.json", "composer.lock"}),
        ("vendor/", "var/cache/", "var/log/"),
    ),
    ProjectType(
        ".NET",
        frozenset({"*.csproj", "*.sln", "*.fsproj", "*.vbproj"}),
        ("bin/", "obj/", "packages/", ".vs/", "Debug/", "Release/"),
    ),
)  # fmt: skip


@dataclass(frozen=True)
class IndexingConfig:
    """Read-only indexing policy consumed by the walker and the watcher."""

    max_file_bytes: int = 2_000_000
    supported_extensions: frozenset[str] = DEFAULT_EXTENSIONS
    common_excludes: tuple[str, ...] = DEFAULT_COMMON_EXCLUDES
    project_types: tuple[ProjectType, ...] = field(default=DEFAULT_PROJECT_TYPES)
    respect_gitignore: bool = True


def _is_binary(path: str | Path) -> bool:
    """Check if file is binary by looking for null bytes in first 8KB."""
    try:
        with open(path, "rb") as f:
            chunk = f.read(8192)
            return b"\x00" in chunk
    except OSError:
        return True  # Can't read = treat as binary


def compute_md5(data: bytes) -> str:
    """MD5 hex digest used as the content hash of an indexed file."""
    return hashlib.md5(data).hexdigest()


def _load_gitignore(folder: str | Path) -> pathspec.PathSpec | None:
    """Load .gitignore patterns from folder, or None when there are none."""
    gitignore_path = Path(folder) / ".gitignore"
    if not gitignore_path.is_file():
        return None
    try:
        patterns = gitignore_path.read_text(encoding="utf-8").splitlines()
        return pathspec.GitIgnoreSpec.from_lines(patterns)
    except (OSError, UnicodeDecodeError):
        return None


def detect_project_types(
    root: str | Path, project_types: tuple[ProjectType, ...]
) -> list[ProjectType]:
    """Return the project types whose marker files exist in *root*."""
    try:
        root_files = set(os.listdir(root))
    except OSError:
        return []

    detected = []
    for project_type in project_types:
        for marker in project_type.markers:
            if "*" in marker:
                hit = any(fnmatch.fnmatchcase(name, marker) for name in root_files)
            else:
                hit = marker in root_files
            if hit:
                detected.append(project_type)
                break
    return detected


def relative_posix(root: Path, path: str | Path) -> str | None:
    """Return *path* relative to *root* with '/' separators, or None if outside."""
    try:
        rel = Path(path).relative_to(root)
    except ValueError:
        return None
    return rel.as_posix()


class ExclusionRules:
    """Effective file and directory filters for one project root."""

    def __init__(self, root: str | Path, indexing: IndexingConfig) -> None:
        self.root = Path(root).resolve()
        self.indexing = indexing
        self.project_types = detect_project_types(self.root, indexing.project_types)

        patterns = list(indexing.common_excludes)
        for project_type in self.project_types:
            patterns.extend(project_type.exclude_paths)
        self.patterns = patterns
        self.spec = pathspec.GitIgnoreSpec.from_lines(patterns)
        self.gitignore = (
            _load_gitignore(self.root) if indexing.respect_gitignore else None
        )
        self.extensions = frozenset(
            ext.lower().lstrip(".") for ext in indexing.supported_extensions
        )

    def _matches(self, rel: str) -> bool:
        if self.spec.match_file(rel):
            return True
        return bool(self.gitignore and self.gitignore.match_file(rel))

    def skip_directory(self, path: str | Path) -> bool:
        """True if the directory (and everything below it) is excluded."""
        path = Path(path)
        if path == self.root:
            return False
        if path.name.startswith("."):
            return True
        if path.is_symlink():
            return True
        rel = relative_posix(self.root, path)
        if rel is None:
            return True
        if any(part.startswith(".") for part in rel.split("/")):
            return True
        return self._matches(rel + "/")

    def accepts_file(self, path: str | Path, check_content: bool = True) -> bool:
        """True if the file is eligible for indexing.

        ``check_content`` reads the first bytes to reject binary files; the
        watcher turns it off for paths that no longer exist.
        """
        path = Path(path)
        if path.name.startswith("."):
            return False
        if path.suffix.lower().lstrip(".") not in self.extensions:
            return False

        rel = relative_posix(self.root, path)
        if rel is None:
            return False
        parts = rel.split("/")
        if any(part.startswith(".") for part in parts[:-1]):
            return False
        if self._matches(rel):
            return False

        if check_content:
            if path.is_symlink() or not path.is_file():
                return False
            if _is_binary(path):
                return False
        return True

    def too_large(self, path: str | Path) -> bool:
        try:
            return os.path.getsize(path) > self.indexing.max_file_bytes
        except OSError:
            return False

    def collect_files(self) -> list[Path]:
        """Walk the root and return every eligible file, sorted."""
        files: list[Path] = []
        for current, dirs, filenames in os.walk(self.root, followlinks=False):
            current_path = Path(current)
            # Filter out skip directories in-place
            dirs[:] = sorted(
                d for d in dirs if not self.skip_directory(current_path / d)
            )
            for filename in filenames:
                full_path = current_path / filename
                if self.accepts_file(full_path):
                    files.append(full_path)
        return sorted(files)

    def walk_directories(self, start: str | Path) -> list[Path]:
        """Return *start* and every non-excluded directory below it."""
        start = Path(start)
        if self.skip_directory(start):
            return []
        found = [start]
        for current, dirs, _ in os.walk(start, followlinks=False):
            current_path = Path(current)
            dirs[:] = sorted(
                d for d in dirs if not self.skip_directory(current_path / d)
            )
            found.extend(current_path / d for d in dirs)
        return found
