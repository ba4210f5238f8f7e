"""Verify generated tests inside a throwaway checkout of the pull request branch."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import time
from contextlib import asynccontextmanager
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, List, Sequence

from testgen.logger import get_logger, log_with_context
from testgen.models.generation import Diagnostic, GeneratedTest, VerificationOutcome

logger = get_logger()

CLONE_TIMEOUT_SECONDS = 300.0


def generated_test_path(directory: str, file_name: str) -> str:
    """Repository-relative path a generated test is written to and published at."""

    return str(PurePosixPath(directory.strip("/") or ".") / PurePosixPath(file_name).name)


class WorkspaceError(RuntimeError):
    """Raised when the verification workspace cannot be prepared."""


class WorkspaceVerifier:
    """Clone-per-run verifier that checks generated tests compile."""

    def __init__(
        self,
        *,
        generated_tests_dir: str = "tests/generated",
        workspace_root: str | Path | None = None,
        clone_timeout: float = CLONE_TIMEOUT_SECONDS,
    ) -> None:
        self._generated_tests_dir = PurePosixPath(generated_tests_dir.strip("/") or ".")
        self._workspace_root = Path(workspace_root) if workspace_root else None
        self._clone_timeout = clone_timeout

    def test_path(self, file_name: str) -> str:
        return generated_test_path(str(self._generated_tests_dir), file_name)

    @asynccontextmanager
    async def workspace(self, clone_url: str, branch: str) -> AsyncIterator[Path]:
        if self._workspace_root is not None:
            self._workspace_root.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix="testgen-", dir=self._workspace_root))
        checkout = root / "repo"
        ctx_logger = log_with_context(logger, branch=branch)
        try:
            ctx_logger.info(f"Cloning {branch} into {checkout}")
            await self._clone(clone_url, branch, checkout)
            yield checkout
        finally:
            shutil.rmtree(root, ignore_errors=True)
            ctx_logger.debug(f"Removed workspace {root}")

    async def _clone(self, clone_url: str, branch: str, target: Path) -> None:
        process = await asyncio.create_subprocess_exec(
            "git",
            "clone",
            "--depth",
            "1",
            "--branch",
            branch,
            clone_url,
            str(target),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._clone_timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise WorkspaceError(f"git clone timed out after {self._clone_timeout:.0f}s") from exc
        if process.returncode != 0:
            # stderr may echo the tokenised URL
            message = stderr.decode("utf-8", errors="replace").replace(clone_url, "<clone-url>").strip()
            raise WorkspaceError(f"git clone failed with exit code {process.returncode}: {message}")

    @staticmethod
    def _write_and_compile(source: str, target: Path) -> List[Diagnostic]:
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            target.unlink()
        target.write_text(source, encoding="utf-8")

        try:
            compile(source, str(target), "exec", dont_inherit=True)
        except SyntaxError as exc:
            return [
                Diagnostic(
                    code=type(exc).__name__,
                    message=exc.msg or str(exc),
                    line=exc.lineno or 0,
                    column=exc.offset or 0,
                )
            ]
        except ValueError as exc:
            # null bytes in source
            return [Diagnostic(code=type(exc).__name__, message=str(exc), line=0, column=0)]
        return []

    async def verify_one(self, test: GeneratedTest, workspace: Path) -> VerificationOutcome:
        started = time.perf_counter()
        target = workspace / self.test_path(test.file_name)
        diagnostics = await asyncio.to_thread(self._write_and_compile, test.test_source, target)

        outcome = VerificationOutcome(
            succeeded=not diagnostics,
            diagnostics=diagnostics,
            duration_seconds=time.perf_counter() - started,
        )
        test.verification = outcome
        if outcome.succeeded:
            logger.debug(f"{test.file_name} compiled in {outcome.duration_seconds:.3f}s")
        else:
            logger.info(f"{test.file_name} failed verification with {len(diagnostics)} error(s)")
        return outcome

    async def verify_batch(self, tests: Sequence[GeneratedTest], workspace: Path) -> List[VerificationOutcome]:
        return [await self.verify_one(test, workspace) for test in tests]
