"""Tests for source hashing and exclusion matching."""

import hashlib

import pytest

from kudev.errors import HashError, NoSourceFilesError
from kudev.hashing import (
    DEFAULT_EXCLUSIONS,
    HashCalculator,
    default_exclusions,
    load_dockerignore,
    match_pattern,
    should_exclude,
)


class TestShouldExclude:
    """Test cases for exclusion pattern matching."""

    @pytest.mark.parametrize(
        "rel_path,pattern",
        [
            (".git", ".git"),
            (".git/HEAD", ".git"),
            ("web/node_modules/react/index.js", "node_modules"),
            ("logs/debug.log", "*.log"),
            ("src/cache.tmp", "src/*.tmp"),
            ("build/out/app.bin", "build"),
            ("docs/internal/notes.md", "docs/internal"),
        ],
    )
    def test_matches(self, rel_path, pattern):
        """Test paths matched by segment, glob, full path and prefix."""
        assert match_pattern(rel_path, pattern)

    @pytest.mark.parametrize(
        "rel_path,pattern",
        [
            ("src/main.py", "*.log"),
            ("src/nested/cache.tmp", "src/*.tmp"),
            ("gitignore.txt", ".git"),
            ("builder/main.go", "build"),
        ],
    )
    def test_does_not_match(self, rel_path, pattern):
        """Test that globs do not cross directories and names are not prefixes."""
        assert not match_pattern(rel_path, pattern)

    def test_root_is_never_excluded(self):
        """Test that the root itself is never excluded."""
        assert not should_exclude(".", ["*"])
        assert not should_exclude("", ["*"])

    def test_default_exclusions_is_a_copy(self):
        """Test that callers cannot mutate the default set."""
        patterns = default_exclusions()
        patterns.append("src")
        assert "src" not in DEFAULT_EXCLUSIONS
        assert default_exclusions() == list(DEFAULT_EXCLUSIONS)


class TestHashCalculator:
    """Test cases for HashCalculator."""

    def test_deterministic(self, source_tree):
        """Test that an unchanged tree hashes identically."""
        calculator = HashCalculator(source_tree)
        first = calculator.calculate()
        second = calculator.calculate()

        assert first == second
        assert len(first) == 8
        assert all(c in "0123456789abcdef" for c in first)

    def test_matches_reference_algorithm(self, tmp_path):
        """Test the digest against a direct computation."""
        (tmp_path / "a.txt").write_bytes(b"alpha")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.txt").write_bytes(b"beta")

        per_file = sorted(
            [
                hashlib.sha256(b"a.txt" + b"alpha").hexdigest(),
                hashlib.sha256(b"sub/b.txt" + b"beta").hexdigest(),
            ]
        )
        expected = hashlib.sha256("".join(per_file).encode()).hexdigest()[:8]

        assert HashCalculator(tmp_path).calculate() == expected

    def test_content_change_changes_digest(self, source_tree):
        """Test that modifying an included file changes the digest."""
        calculator = HashCalculator(source_tree)
        before = calculator.calculate()

        (source_tree / "main.py").write_text("print('changed')\n")

        assert calculator.calculate() != before

    def test_excluded_change_keeps_digest(self, source_tree):
        """Test that modifying an excluded file does not change the digest."""
        (source_tree / "debug.log").write_text("one\n")
        calculator = HashCalculator(source_tree)
        before = calculator.calculate()

        (source_tree / "debug.log").write_text("two\n")
        (source_tree / "node_modules").mkdir()
        (source_tree / "node_modules" / "dep.js").write_text("module.exports = 1\n")

        assert calculator.calculate() == before

    def test_rename_changes_digest(self, source_tree):
        """Test that a pure rename changes the digest."""
        calculator = HashCalculator(source_tree)
        before = calculator.calculate()

        (source_tree / "pkg" / "util.py").rename(source_tree / "pkg" / "helpers.py")

        assert calculator.calculate() != before

    def test_caller_exclusions_are_added(self, source_tree):
        """Test that caller patterns apply on top of the defaults."""
        baseline = HashCalculator(source_tree).calculate()
        (source_tree / ".git").mkdir()
        (source_tree / ".git" / "HEAD").write_text("ref: refs/heads/main\n")

        calculator = HashCalculator(source_tree, exclusions=["pkg"])

        assert calculator.should_exclude(".git/HEAD")
        assert calculator.should_exclude("pkg/util.py")
        assert calculator.calculate() != baseline

    def test_no_files(self, tmp_path):
        """Test that a fully excluded tree is reported distinctly."""
        (tmp_path / "app.log").write_text("x")

        with pytest.raises(NoSourceFilesError) as exc_info:
            HashCalculator(tmp_path).calculate()

        assert "no files found" in str(exc_info.value)

    def test_missing_directory(self, tmp_path):
        """Test that an unreadable root is an I/O failure."""
        with pytest.raises(HashError) as exc_info:
            HashCalculator(tmp_path / "missing").calculate()

        assert not isinstance(exc_info.value, NoSourceFilesError)


class TestLoadDockerignore:
    """Test cases for .dockerignore parsing."""

    def test_parses_patterns(self, tmp_path):
        """Test that comments and blank lines are skipped."""
        (tmp_path / ".dockerignore").write_text("# build output\ndist\n\n  *.pyc  \n")

        assert load_dockerignore(tmp_path) == ["dist", "*.pyc"]

    def test_missing_file(self, tmp_path):
        """Test that a missing .dockerignore yields no patterns."""
        assert load_dockerignore(tmp_path) == []
