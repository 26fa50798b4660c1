"""Tests for the built-in pattern library and language detection."""

import json

import pytest

from tmux_orchestrator.models import Severity
from tmux_orchestrator.patterns import (
    SUPPORTED_LANGUAGES,
    builtin_patterns,
    detect_languages,
    normalize_languages,
    patterns_for,
)


def first_match(line: str, language: str):
    """Return (pattern name, fields) of the first language or generic match."""
    for pattern in builtin_patterns():
        if pattern.language not in (None, language):
            continue
        fields = pattern.extract(line)
        if fields is not None:
            return pattern.name, fields
    return None


class TestLibrary:
    """Test library structure."""

    def test_names_are_unique(self):
        """Built-in pattern names are unique."""
        names = [p.name for p in builtin_patterns()]
        assert len(names) == len(set(names))

    def test_generic_patterns_last(self):
        """Generic fallbacks come after language patterns."""
        patterns = builtin_patterns()
        generic = [i for i, p in enumerate(patterns) if p.language is None]
        assert generic == list(range(len(patterns) - len(generic), len(patterns)))

    def test_every_language_has_patterns(self):
        """Each supported language has patterns."""
        for language in SUPPORTED_LANGUAGES:
            assert patterns_for(language)
            assert all(p.language == language for p in patterns_for(language))

    def test_patterns_for_returns_fresh_copies(self):
        """Callers get their own pattern objects."""
        assert patterns_for("node")[0] is not patterns_for("node")[0]

    def test_unknown_language(self):
        """An unknown language is rejected."""
        with pytest.raises(ValueError):
            patterns_for("cobol")


class TestNodePatterns:
    """Test Node.js patterns."""

    def test_module_not_found(self):
        """Node module resolution errors are classified."""
        name, fields = first_match("Error: Cannot find module 'express'", "node")
        assert name == "node.error"
        assert fields["error_type"] == "Error"
        assert fields["message"] == "Cannot find module 'express'"

    def test_error_code(self):
        """Node error codes are extracted."""
        name, fields = first_match(
            "Error [ERR_MODULE_NOT_FOUND]: Cannot find package 'vite'", "node"
        )
        assert name == "node.error"
        assert fields["code"] == "ERR_MODULE_NOT_FOUND"

    def test_type_error(self):
        """JavaScript runtime errors keep their type."""
        name, fields = first_match("TypeError: Cannot read properties of undefined", "node")
        assert fields["error_type"] == "TypeError"

    def test_stack_frame_is_info(self):
        """Stack frames are informational."""
        name, fields = first_match("    at Object.<anonymous> (/app/index.js:3:9)", "node")
        assert name == "node.stack_frame"
        assert fields == {"file": "/app/index.js", "line": "3", "column": "9"}
        pattern = next(p for p in builtin_patterns() if p.name == name)
        assert pattern.severity is Severity.INFO

    def test_npm_error(self):
        """npm errors are classified."""
        name, _ = first_match("npm ERR! code ELIFECYCLE", "node")
        assert name == "node.npm_error"


class TestOtherLanguages:
    """Test patterns for the remaining languages."""

    def test_typescript_compile_error_paren_form(self):
        """tsc errors in file(line,col) form are parsed."""
        name, fields = first_match(
            "src/index.ts(10,5): error TS2322: Type 'string' is not assignable", "typescript"
        )
        assert name == "typescript.compile_error"
        assert fields["file"] == "src/index.ts"
        assert fields["line"] == "10"
        assert fields["code"] == "TS2322"

    def test_typescript_compile_error_colon_form(self):
        """tsc errors in file:line:col form are parsed."""
        name, fields = first_match(
            "src/app.tsx:4:12 - error TS2304: Cannot find name 'foo'.", "typescript"
        )
        assert name == "typescript.compile_error"
        assert fields["line"] == "4"
        assert fields["column"] == "12"

    def test_python_traceback(self):
        """Python exceptions keep their type and message."""
        assert first_match("Traceback (most recent call last):", "python")[0] == "python.traceback"
        name, fields = first_match("KeyError: 'user_id'", "python")
        assert name == "python.exception"
        assert fields["error_type"] == "KeyError"

    def test_python_frame(self):
        """Python frames give file and line."""
        name, fields = first_match('  File "/app/main.py", line 12, in handler', "python")
        assert name == "python.frame"
        assert fields["function"] == "handler"

    def test_go_panic(self):
        """Go panics are classified."""
        name, fields = first_match("panic: runtime error: index out of range", "go")
        assert name == "go.panic"
        assert fields["message"] == "runtime error: index out of range"

    def test_go_compile_error(self):
        """Go compiler errors give file and line."""
        name, fields = first_match("./main.go:14:2: undefined: foo", "go")
        assert name == "go.compile_error"
        assert fields["file"] == "main.go"

    def test_rust_compile_error(self):
        """rustc errors keep their error code."""
        name, fields = first_match("error[E0308]: mismatched types", "rust")
        assert name == "rust.compile_error"
        assert fields["code"] == "E0308"

    def test_rust_panic(self):
        """Rust panics are classified."""
        name, fields = first_match(
            "thread 'main' panicked at 'index out of bounds', src/main.rs:5:9", "rust"
        )
        assert name == "rust.panic"
        assert fields["thread"] == "main"
        assert fields["file"] == "src/main.rs"

    def test_java_exception(self):
        """Java exceptions keep their class."""
        name, fields = first_match(
            'Exception in thread "main" java.lang.NullPointerException: oops', "java"
        )
        assert name == "java.exception"
        assert fields["error_type"] == "java.lang.NullPointerException"
        assert fields["thread"] == "main"

    def test_generic_fallbacks(self):
        """Generic patterns catch unlabelled errors and warnings."""
        assert first_match("2024-01-01 ERROR db connection lost", "python")[0] == "generic.error"
        assert first_match("[WARN] disk almost full", "go")[0] == "generic.warning"
        assert first_match("FATAL: out of memory", "rust")[0] == "generic.fatal"

    def test_plain_output_does_not_match(self):
        """Ordinary output matches nothing."""
        assert first_match("Server listening on http://localhost:3000", "node") is None


class TestDetectLanguages:
    """Test marker-file language detection."""

    def test_empty_directory(self, tmp_path):
        """An empty project has no languages."""
        assert detect_languages(tmp_path) == []

    def test_missing_directory(self, tmp_path):
        """A missing directory has no languages."""
        assert detect_languages(tmp_path / "missing") == []

    def test_node_project(self, tmp_path):
        """package.json marks a Node project."""
        (tmp_path / "package.json").write_text('{"name": "app"}')
        assert detect_languages(tmp_path) == ["node"]

    def test_node_with_typescript_dependency(self, tmp_path):
        """A typescript dependency adds TypeScript."""
        (tmp_path / "package.json").write_text(
            json.dumps({"devDependencies": {"typescript": "^5.0.0"}})
        )
        assert detect_languages(tmp_path) == ["node", "typescript"]

    def test_polyglot_in_detection_order(self, tmp_path):
        """Several markers give several languages in a fixed order."""
        (tmp_path / "go.mod").write_text("module example.com/app")
        (tmp_path / "pyproject.toml").write_text("[project]")
        (tmp_path / "requirements.txt").write_text("")
        assert detect_languages(tmp_path) == ["python", "go"]

    def test_invalid_package_json(self, tmp_path):
        """A broken package.json still marks a Node project."""
        (tmp_path / "package.json").write_text("{not json")
        assert detect_languages(tmp_path) == ["node"]


class TestNormalizeLanguages:
    """Test language tag normalization."""

    def test_aliases(self):
        """Common aliases map to their language."""
        assert normalize_languages(["JS", "ts", "py"]) == ["node", "typescript", "python"]

    def test_dedupes(self):
        """Repeated languages are listed once."""
        assert normalize_languages(["node", "javascript"]) == ["node"]

    def test_none(self):
        """None means no languages."""
        assert normalize_languages(None) == []

    def test_unknown(self):
        """Unknown language tags raise ValueError."""
        with pytest.raises(ValueError):
            normalize_languages(["cobol"])
