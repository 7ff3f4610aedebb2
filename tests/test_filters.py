"""Unit tests for ragwatch.filters."""

import os
from pathlib import Path

import pytest

from ragwatch.filters import (
    DEFAULT_PROJECT_TYPES,
    ExclusionRules,
    IndexingConfig,
    ProjectType,
    _is_binary,
    _load_gitignore,
    compute_md5,
    detect_project_types,
    relative_posix,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def project(tmp_path):
    """A small Node.js project with sources, build output and noise."""
    (tmp_path / "package.json").write_text('{"name": "demo"}')
    (tmp_path / "index.js").write_text("console.log('hi');\n")
    (tmp_path / "notes.md").write_text("# Notes\n")
    (tmp_path / "image.png").write_bytes(b"\x89PNG\x00\x00")
    (tmp_path / ".env").write_text("SECRET=1")
    (tmp_path / "debug.log").write_text("log line")

    src = tmp_path / "src"
    src.mkdir()
    (src / "util.ts").write_text("export const x = 1;\n")
    (src / "data.json").write_bytes(b'{"a": 1}\x00')

    for skipped in ("node_modules/lib", "dist", ".git/objects"):
        d = tmp_path / skipped
        d.mkdir(parents=True)
        (d / "bundle.js").write_text("// generated")
    return tmp_path


def _rules(root, **overrides):
    return ExclusionRules(root, IndexingConfig(**overrides))


# ---------------------------------------------------------------------------
# Tests for helpers
# ---------------------------------------------------------------------------


class TestIsBinary:
    def test_text_file_not_binary(self, tmp_path):
        f = tmp_path / "text.txt"
        f.write_text("Hello, world!")
        assert _is_binary(f) is False

    def test_null_byte_is_binary(self, tmp_path):
        f = tmp_path / "blob.bin"
        f.write_bytes(b"Hello\x00World")
        assert _is_binary(f) is True

    def test_nonexistent_file_treated_as_binary(self):
        assert _is_binary("/nonexistent/path/file.txt") is True


class TestComputeMd5:
    def test_known_digest(self):
        assert compute_md5(b"Hello, world!") == "6cd3556deb0da54bca060b4c39479839"

    def test_empty(self):
        assert compute_md5(b"") == "d41d8cd98f00b204e9800998ecf8427e"


class TestLoadGitignore:
    def test_loads_patterns(self, tmp_path):
        (tmp_path / ".gitignore").write_text("*.pyc\ngenerated/\n")
        spec = _load_gitignore(tmp_path)
        assert spec is not None
        assert spec.match_file("a.pyc")
        assert spec.match_file("generated/x.py")
        assert not spec.match_file("x.py")

    def test_missing_returns_none(self, tmp_path):
        assert _load_gitignore(tmp_path) is None


class TestRelativePosix:
    def test_inside_root(self, tmp_path):
        assert relative_posix(tmp_path, tmp_path / "a" / "b.py") == "a/b.py"

    def test_outside_root(self, tmp_path):
        assert relative_posix(tmp_path / "a", tmp_path / "b.py") is None


class TestDetectProjectTypes:
    def test_detects_by_marker(self, project):
        names = [t.name for t in detect_project_types(project, DEFAULT_PROJECT_TYPES)]
        assert names == ["Node.js"]

    def test_glob_marker(self, tmp_path):
        (tmp_path / "App.csproj").write_text("<Project/>")
        names = [t.name for t in detect_project_types(tmp_path, DEFAULT_PROJECT_TYPES)]
        assert ".NET" in names

    def test_multiple_types(self, tmp_path):
        (tmp_path / "pom.xml").write_text("<project/>")
        (tmp_path / "pyproject.toml").write_text("[project]\n")
        names = {t.name for t in detect_project_types(tmp_path, DEFAULT_PROJECT_TYPES)}
        assert names == {"Maven", "Python"}

    def test_missing_root(self, tmp_path):
        assert detect_project_types(tmp_path / "nope", DEFAULT_PROJECT_TYPES) == []


# ---------------------------------------------------------------------------
# Tests for ExclusionRules
# ---------------------------------------------------------------------------


class TestExclusionRules:
    def test_collect_files(self, project):
        rels = [relative_posix(project, p) for p in _rules(project).collect_files()]
        assert rels == ["index.js", "notes.md", "package.json", "src/util.ts"]

    def test_project_type_excludes_applied(self, project):
        rules = _rules(project)
        assert rules.skip_directory(project / "node_modules")
        assert rules.skip_directory(project / "dist")
        assert not rules.skip_directory(project / "src")

    def test_without_marker_build_dirs_are_kept(self, tmp_path):
        (tmp_path / "dist").mkdir()
        (tmp_path / "dist" / "a.js").write_text("x")
        rels = [relative_posix(tmp_path, p) for p in _rules(tmp_path).collect_files()]
        assert rels == ["dist/a.js"]

    def test_hidden_directory_skipped(self, project):
        assert _rules(project).skip_directory(project / ".git")

    def test_root_never_skipped(self, project):
        assert not _rules(project).skip_directory(project)

    def test_accepts_file_rejects_extension(self, project):
        assert not _rules(project).accepts_file(project / "image.png")

    def test_accepts_file_rejects_hidden(self, project):
        assert not _rules(project).accepts_file(project / ".env")

    def test_accepts_file_rejects_pattern(self, project):
        rules = _rules(project, supported_extensions=frozenset({"log", "js"}))
        assert not rules.accepts_file(project / "debug.log")

    def test_accepts_file_rejects_excluded_directory(self, project):
        rules = _rules(project)
        assert not rules.accepts_file(project / "node_modules" / "lib" / "bundle.js")
        assert not rules.accepts_file(project / ".git" / "objects" / "bundle.js")

    def test_accepts_file_rejects_binary(self, project):
        assert not _rules(project).accepts_file(project / "src" / "data.json")

    def test_accepts_missing_file_without_content_check(self, project):
        rules = _rules(project)
        assert rules.accepts_file(project / "gone.py", check_content=False)
        assert not rules.accepts_file(project / "gone.py")

    def test_outside_root_rejected(self, project, tmp_path_factory):
        other = tmp_path_factory.mktemp("other")
        f = other / "x.py"
        f.write_text("x = 1")
        assert not _rules(project).accepts_file(f)

    def test_gitignore_respected(self, project):
        (project / ".gitignore").write_text("notes.md\n")
        rels = [relative_posix(project, p) for p in _rules(project).collect_files()]
        assert "notes.md" not in rels

    def test_gitignore_can_be_disabled(self, project):
        (project / ".gitignore").write_text("notes.md\n")
        rules = _rules(project, respect_gitignore=False)
        rels = [relative_posix(project, p) for p in rules.collect_files()]
        assert "notes.md" in rels

    def test_custom_project_type(self, tmp_path):
        custom = ProjectType("Custom", frozenset({"marker.cfg"}), ("generated/",))
        (tmp_path / "marker.cfg").write_text("")
        (tmp_path / "generated").mkdir()
        rules = _rules(tmp_path, project_types=(custom,))
        assert rules.skip_directory(tmp_path / "generated")

    def test_too_large(self, project):
        rules = _rules(project, max_file_bytes=5)
        assert rules.too_large(project / "index.js")
        assert not rules.too_large(project / "missing.js")

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    def test_symlinks_skipped(self, project):
        (project / "link.js").symlink_to(project / "index.js")
        (project / "linkdir").symlink_to(project / "src", target_is_directory=True)
        rels = [relative_posix(project, p) for p in _rules(project).collect_files()]
        assert "link.js" not in rels
        assert not any(r.startswith("linkdir/") for r in rels)

    def test_walk_directories(self, project):
        dirs = _rules(project).walk_directories(project)
        names = sorted(Path(d).name for d in dirs)
        assert names == sorted([project.name, "src"])

    def test_walk_directories_of_excluded_start(self, project):
        assert _rules(project).walk_directories(project / "node_modules") == []
