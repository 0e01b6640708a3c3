"""Code interpreter behind the worker's ``execute_code`` and ``analyze_code`` tools.

Python snippets run in an isolated child interpreter (``python -I``) and
JavaScript snippets in ``node`` when it is installed. Every run is bounded by
a timeout and its output is truncated. Shell execution is refused.
"""

import ast
import asyncio
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from config import settings

logger = structlog.get_logger(__name__)

EXECUTABLE_LANGUAGES = ("python", "javascript")
REFUSED_LANGUAGES = ("bash",)


@dataclass
class CommandResult:
    """Outcome of a single snippet run."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class AnalysisReport:
    syntax_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "syntaxValid": self.syntax_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "suggestions": self.suggestions,
        }


class UnsupportedLanguageError(ValueError):
    """The requested language cannot be executed or analyzed here."""


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n... [truncated {len(text) - max_chars} characters]"


class CodeInterpreter:
    """Runs and statically checks short code snippets."""

    def __init__(
        self,
        timeout_seconds: float | None = None,
        max_output_chars: int | None = None,
        node_binary: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds or settings.interpreter_timeout_seconds
        self.max_output_chars = max_output_chars or settings.interpreter_max_output_chars
        self.node_binary = node_binary if node_binary is not None else shutil.which("node")

    async def execute(self, code: str, language: str) -> CommandResult:
        """Run ``code`` and capture its output.

        Raises:
            UnsupportedLanguageError: For shell, TypeScript, or JavaScript
                without a node binary.
        """
        if language in REFUSED_LANGUAGES:
            raise UnsupportedLanguageError("Shell execution is not permitted")
        if language == "python":
            argv = [sys.executable, "-I", "-c", code]
        elif language == "javascript":
            if not self.node_binary:
                raise UnsupportedLanguageError("JavaScript execution requires node on PATH")
            argv = [self.node_binary, "-e", code]
        else:
            raise UnsupportedLanguageError(
                f"Execution of {language} is not supported; use analyze_code instead"
            )
        return await self._run(argv)

    async def _run(self, argv: list[str]) -> CommandResult:
        with tempfile.TemporaryDirectory(prefix="relay-run-") as workdir:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env={"PATH": os.environ.get("PATH", ""), "HOME": workdir},
            )
            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.timeout_seconds
                )
            except TimeoutError:
                process.kill()
                await process.wait()
                logger.warning("code_execution_timeout", argv0=argv[0], timeout=self.timeout_seconds)
                return CommandResult(
                    stdout="",
                    stderr=f"Execution timed out after {self.timeout_seconds}s",
                    exit_code=-1,
                    timed_out=True,
                )

        return CommandResult(
            stdout=_truncate(stdout.decode("utf-8", errors="replace"), self.max_output_chars),
            stderr=_truncate(stderr.decode("utf-8", errors="replace"), self.max_output_chars),
            exit_code=process.returncode if process.returncode is not None else -1,
        )

    async def analyze(self, code: str, language: str) -> AnalysisReport:
        if language == "python":
            return self._analyze_python(code)
        if language in ("javascript", "typescript"):
            return await self._analyze_script(code, language)
        raise UnsupportedLanguageError(f"Analysis of {language} is not supported")

    def _analyze_python(self, code: str) -> AnalysisReport:
        try:
            tree = ast.parse(code)
        except SyntaxError as e:
            return AnalysisReport(syntax_valid=False, errors=[f"line {e.lineno}: {e.msg}"])

        report = AnalysisReport(syntax_valid=True)
        for node in ast.walk(tree):
            if isinstance(node, ast.ExceptHandler) and node.type is None:
                report.warnings.append(f"line {node.lineno}: bare except clause")
            elif (
                isinstance(node, ast.Call)
                and isinstance(node.func, ast.Name)
                and node.func.id in ("eval", "exec")
            ):
                report.warnings.append(f"line {node.lineno}: use of {node.func.id}()")
        if not any(isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef)) for n in tree.body):
            report.suggestions.append("Consider wrapping top-level logic in functions")
        return report

    async def _analyze_script(self, code: str, language: str) -> AnalysisReport:
        report = AnalysisReport(syntax_valid=True)
        if "var " in code:
            report.suggestions.append("Prefer let/const over var")
        if "console.log" in code:
            report.warnings.append("console.log left in code")
        if language == "typescript" and ": any" in code:
            report.warnings.append("Explicit 'any' type weakens type checking")

        if language == "typescript" or not self.node_binary:
            # No type-stripping compiler available; structural checks only.
            if code.count("{") != code.count("}") or code.count("(") != code.count(")"):
                report.syntax_valid = False
                report.errors.append("Unbalanced braces or parentheses")
            return report

        with tempfile.TemporaryDirectory(prefix="relay-check-") as workdir:
            script = Path(workdir) / "snippet.mjs"
            script.write_text(code, encoding="utf-8")
            result = await self._run([self.node_binary, "--check", str(script)])
        if not result.success:
            report.syntax_valid = False
            detail = (result.stderr or result.stdout).strip().splitlines()
            report.errors.append(detail[-1] if detail else "Syntax check failed")
        return report
