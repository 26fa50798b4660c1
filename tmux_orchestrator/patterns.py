"""Built-in error pattern library and project language detection.

Patterns are grouped by language tag. Untagged (``language=None``) patterns
apply to every pane regardless of its language set; they are registered last
so language-specific patterns get the first chance to match.

Language detection looks at marker files in a session's working directory:

1. package.json -> node (plus typescript if a typescript dependency exists)
2. tsconfig.json -> typescript
3. pyproject.toml / requirements.txt / setup.py -> python
4. go.mod -> go
5. Cargo.toml -> rust
6. pom.xml / build.gradle -> java
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .models import ErrorPattern, Severity

logger = logging.getLogger(__name__)

__all__ = [
    "SUPPORTED_LANGUAGES",
    "builtin_patterns",
    "patterns_for",
    "detect_languages",
    "normalize_languages",
]

SUPPORTED_LANGUAGES = ("node", "typescript", "python", "go", "rust", "java")

# (marker file, language)
DETECTION_ORDER = [
    ("package.json", "node"),
    ("tsconfig.json", "typescript"),
    ("pyproject.toml", "python"),
    ("requirements.txt", "python"),
    ("setup.py", "python"),
    ("go.mod", "go"),
    ("Cargo.toml", "rust"),
    ("pom.xml", "java"),
    ("build.gradle", "java"),
]


def _node_patterns() -> list[ErrorPattern]:
    return [
        ErrorPattern(
            name="node.unhandled_rejection",
            regex=r"UnhandledPromiseRejection(?:Warning)?:?\s*(?P<message>.*)",
            language="node",
            description="Unhandled promise rejection",
        ),
        ErrorPattern(
            name="node.npm_error",
            regex=r"^npm ERR!\s*(?P<message>.*)",
            language="node",
            description="npm failure",
        ),
        ErrorPattern(
            name="node.error",
            regex=(
                r"^(?:Uncaught\s+)?(?P<error_type>(?:[A-Z][A-Za-z]*)?Error)"
                r"(?:\s*\[(?P<code>[A-Z_0-9]+)\])?:\s*(?P<message>.+)"
            ),
            language="node",
            description="Thrown JavaScript error",
        ),
        ErrorPattern(
            name="node.stack_frame",
            regex=r"^\s+at\s+(?:.+?\s+\()?(?P<file>[^()\s]+?):(?P<line>\d+):(?P<column>\d+)\)?$",
            severity=Severity.INFO,
            language="node",
            description="Stack trace frame",
        ),
    ]


def _typescript_patterns() -> list[ErrorPattern]:
    return [
        ErrorPattern(
            name="typescript.compile_error",
            regex=(
                r"(?P<file>[^\s(:]+\.tsx?)(?:\((?P<line>\d+),(?P<column>\d+)\)|:(?P<line2>\d+):(?P<column2>\d+))"
                r"\s*[-:]\s*error\s+(?P<code>TS\d+):\s*(?P<message>.+)"
            ),
            language="typescript",
            fields={"line2": "line", "column2": "column"},
            description="tsc diagnostic",
        ),
        ErrorPattern(
            name="typescript.error",
            regex=r"\berror\s+(?P<code>TS\d+):\s*(?P<message>.+)",
            language="typescript",
            description="tsc diagnostic without location",
        ),
    ]


def _python_patterns() -> list[ErrorPattern]:
    return [
        ErrorPattern(
            name="python.traceback",
            regex=r"^Traceback \(most recent call last\):",
            language="python",
            description="Start of a Python traceback",
        ),
        ErrorPattern(
            name="python.exception",
            regex=(
                r"^(?P<error_type>(?:[A-Za-z_][\w.]*\.)?[A-Z]\w*(?:Error|Exception|Interrupt|Exit))"
                r":\s*(?P<message>.*)"
            ),
            language="python",
            description="Raised exception",
        ),
        ErrorPattern(
            name="python.frame",
            regex=r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+)(?:, in (?P<function>\S+))?',
            severity=Severity.INFO,
            language="python",
            description="Traceback frame",
        ),
        ErrorPattern(
            name="python.warning",
            regex=r"(?P<file>\S+\.py):(?P<line>\d+): (?P<error_type>\w*Warning): (?P<message>.+)",
            severity=Severity.WARNING,
            language="python",
            description="warnings module output",
        ),
    ]


def _go_patterns() -> list[ErrorPattern]:
    return [
        ErrorPattern(
            name="go.panic",
            regex=r"^panic:\s*(?P<message>.+)",
            language="go",
            description="Go runtime panic",
        ),
        ErrorPattern(
            name="go.fatal",
            regex=r"^fatal error:\s*(?P<message>.+)",
            language="go",
            description="Go runtime fatal error",
        ),
        ErrorPattern(
            name="go.compile_error",
            regex=r"^(?:\./)?(?P<file>[\w./-]+\.go):(?P<line>\d+):(?P<column>\d+):\s*(?P<message>.+)",
            language="go",
            description="go build diagnostic",
        ),
    ]


def _rust_patterns() -> list[ErrorPattern]:
    return [
        ErrorPattern(
            name="rust.compile_error",
            regex=r"^error\[(?P<code>E\d{4})\]:\s*(?P<message>.+)",
            language="rust",
            description="rustc diagnostic",
        ),
        ErrorPattern(
            name="rust.panic",
            regex=r"thread '(?P<thread>[^']*)' panicked at (?:'(?P<message>[^']*)', )?(?P<file>[^:\s]+):(?P<line>\d+)",
            language="rust",
            description="Rust panic",
        ),
        ErrorPattern(
            name="rust.warning",
            regex=r"^warning(?:\[(?P<code>\w+)\])?:\s*(?P<message>.+)",
            severity=Severity.WARNING,
            language="rust",
            description="rustc warning",
        ),
    ]


def _java_patterns() -> list[ErrorPattern]:
    return [
        ErrorPattern(
            name="java.exception",
            regex=(
                r"^(?:Exception in thread \"(?P<thread>[^\"]+)\"\s+)?"
                r"(?P<error_type>(?:[a-z_$][\w$]*\.)+[A-Z][\w$]*(?:Exception|Error))"
                r"(?::\s*(?P<message>.*))?$"
            ),
            language="java",
            description="Java exception",
        ),
        ErrorPattern(
            name="java.frame",
            regex=r"^\s+at\s+(?P<function>[\w$.<>]+)\((?P<file>[\w$]+\.java):(?P<line>\d+)\)",
            severity=Severity.INFO,
            language="java",
            description="Stack trace frame",
        ),
    ]


def _generic_patterns() -> list[ErrorPattern]:
    return [
        ErrorPattern(
            name="generic.fatal",
            regex=r"\b(?:FATAL|CRITICAL|PANIC)\b[:\s]*(?P<message>.*)",
            description="Fatal log level",
        ),
        ErrorPattern(
            name="generic.error",
            regex=r"\b(?:ERROR|ERR)\b[:\]\s]*(?P<message>.*)",
            description="Error log level",
        ),
        ErrorPattern(
            name="generic.warning",
            regex=r"\b(?:WARN|WARNING)\b[:\]\s]*(?P<message>.*)",
            severity=Severity.WARNING,
            description="Warning log level",
        ),
    ]


_LIBRARY = {
    "node": _node_patterns,
    "typescript": _typescript_patterns,
    "python": _python_patterns,
    "go": _go_patterns,
    "rust": _rust_patterns,
    "java": _java_patterns,
}


def patterns_for(language: str) -> list[ErrorPattern]:
    """Return fresh copies of the built-in patterns for one language."""
    factory = _LIBRARY.get(language)
    if factory is None:
        raise ValueError(f"Unknown language: {language}")
    return factory()


def builtin_patterns() -> list[ErrorPattern]:
    """Return the complete built-in library in registration order."""
    patterns: list[ErrorPattern] = []
    for language in SUPPORTED_LANGUAGES:
        patterns.extend(patterns_for(language))
    patterns.extend(_generic_patterns())
    return patterns


def _package_uses_typescript(package_json: Path) -> bool:
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Could not read %s: %s", package_json, e)
        return False

    if not isinstance(data, dict):
        return False
    for section in ("dependencies", "devDependencies"):
        deps = data.get(section)
        if isinstance(deps, dict) and "typescript" in deps:
            return True
    return False


def detect_languages(working_dir: str | Path) -> list[str]:
    """Detect the languages of a project from its marker files.

    Args:
        working_dir: The project root directory.

    Returns:
        Detected language tags in detection order, without duplicates.
    """
    root = Path(working_dir)
    if not root.is_dir():
        return []

    detected: list[str] = []
    for filename, language in DETECTION_ORDER:
        if language not in detected and (root / filename).exists():
            detected.append(language)

    package_json = root / "package.json"
    if "typescript" not in detected and package_json.exists() and _package_uses_typescript(package_json):
        detected.append("typescript")

    if detected:
        logger.debug("Detected languages for %s: %s", root, ", ".join(detected))
    return detected


def normalize_languages(languages: list[str] | None) -> list[str]:
    """Lower-case and validate a list of language tags."""
    normalized: list[str] = []
    for language in languages or []:
        tag = language.strip().lower()
        if tag in ("javascript", "js"):
            tag = "node"
        elif tag in ("ts",):
            tag = "typescript"
        elif tag in ("py",):
            tag = "python"
        if tag not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unknown language: {language}")
        if tag not in normalized:
            normalized.append(tag)
    return normalized

