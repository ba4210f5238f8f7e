"""Generate, verify, regenerate and publish unit tests for one pull request."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import (
    AsyncContextManager,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Mapping,
    Protocol,
    Sequence,
    Tuple,
)

from testgen.config import Settings, SettingsError, get_settings
from testgen.gemini_client import GeminiClient
from testgen.github_client import GitHubInstallationClient
from testgen.logger import get_logger, log_failure, log_for_event, log_success, log_timing
from testgen.models.generation import (
    ChangedFile,
    GeneratedTest,
    GenerationResult,
    PullRequestContext,
    VerificationOutcome,
)
from testgen.queue.models import PullRequestPayload, WebhookEvent
from testgen.services.pull_request_context import build_pull_request_context
from testgen.services.source_control import GitHubRepository
from testgen.verifier import WorkspaceVerifier, generated_test_path

logger = get_logger()

GENERATED_TESTS_MARKER = "[generated-tests]"
FALLBACK_TEST_FILE_NAME = "test_generated_{index}.py"


class SourceControl(Protocol):
    async def list_changed_files(self, pr_number: int) -> List[ChangedFile]: ...

    async def get_file_content(self, path: str, ref: str | None = None) -> str | None: ...

    async def get_latest_commit_message(self, pr_number: int) -> str | None: ...

    async def search_code(self, term: str, extensions: Sequence[str] = (), limit: int = 2) -> List[str]: ...

    async def push_files(self, branch: str, base_commit: str, files: Mapping[str, str], message: str) -> str: ...

    async def clone_url(self) -> str: ...


class TestGenerator(Protocol):
    async def generate_tests(self, context: PullRequestContext) -> GenerationResult: ...

    async def regenerate_test(self, context: PullRequestContext, failing_test: GeneratedTest) -> GenerationResult: ...


class Verifier(Protocol):
    def workspace(self, clone_url: str, branch: str) -> AsyncContextManager[Path]: ...

    async def verify_batch(self, tests: Sequence[GeneratedTest], workspace: Path) -> List[VerificationOutcome]: ...

    async def verify_one(self, test: GeneratedTest, workspace: Path) -> VerificationOutcome: ...


ContextBuilder = Callable[[SourceControl, PullRequestPayload, Settings], Awaitable[PullRequestContext]]


class RunState(str, Enum):
    IDLE = "idle"
    BUILDING_CONTEXT = "building_context"
    GENERATING = "generating"
    VERIFYING = "verifying"
    REGENERATING = "regenerating"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"


class GenerationRunError(RuntimeError):
    """Raised when a generation run cannot complete."""

    def __init__(self, message: str, step: str, original_error: Exception | None = None):
        super().__init__(message)
        self.step = step
        self.original_error = original_error


@dataclass(slots=True)
class RunResult:
    state: RunState
    published_tests: List[GeneratedTest] = field(default_factory=list)
    commit_sha: str | None = None
    skipped: bool = False
    dropped_tests: List[str] = field(default_factory=list)


def usable_test_file_name(file_name: str | None, index: int) -> str:
    """Return the basename of ``file_name`` if it names a python module, else a fallback."""

    name = PurePosixPath((file_name or "").replace("\\", "/")).name
    if not name.endswith(".py") or not name.removesuffix(".py").strip("."):
        return FALLBACK_TEST_FILE_NAME.format(index=index)
    return name


def deduplicate_tests(tests: Sequence[GeneratedTest]) -> List[GeneratedTest]:
    """Keep one test per file name; the last one wins, the first position is kept.

    Names that cannot be written as a module are replaced first.
    """

    by_name: Dict[str, GeneratedTest] = {}
    for index, test in enumerate(tests, start=1):
        file_name = usable_test_file_name(test.file_name, index)
        if file_name != test.file_name:
            logger.warning(f"Renaming generated test {test.file_name!r} to {file_name!r}")
            test.file_name = file_name
        by_name[file_name] = test
    return list(by_name.values())


class GeneratedTestPublisher:
    """Push verified tests onto the pull request branch as a single commit."""

    def __init__(self, source_control: SourceControl, *, generated_tests_dir: str) -> None:
        self._source_control = source_control
        self._generated_tests_dir = generated_tests_dir

    def files_for(self, tests: Sequence[GeneratedTest]) -> Dict[str, str]:
        return {generated_test_path(self._generated_tests_dir, test.file_name): test.test_source for test in tests}

    async def publish(self, context: PullRequestContext, tests: Sequence[GeneratedTest]) -> str | None:
        if not tests:
            return None
        if not context.head_ref or not context.head_sha:
            raise ValueError("Pull request context is missing the head branch or commit")

        message = (
            f"Add generated unit tests for PR #{context.pr_number} {GENERATED_TESTS_MARKER}\n\n"
            + "\n".join(f"- {test.file_name}" for test in tests)
        )
        return await self._source_control.push_files(
            context.head_ref, context.head_sha, self.files_for(tests), message
        )


class GenerationOrchestrator:
    """Drive one pull request event through the generation state machine."""

    def __init__(
        self,
        source_control: SourceControl,
        generator: TestGenerator,
        verifier: Verifier,
        settings: Settings,
        *,
        context_builder: ContextBuilder = build_pull_request_context,
    ) -> None:
        self._source_control = source_control
        self._generator = generator
        self._verifier = verifier
        self._settings = settings
        self._context_builder = context_builder
        self._publisher = GeneratedTestPublisher(
            source_control, generated_tests_dir=settings.generated_tests_dir
        )
        self.state = RunState.IDLE

    def _transition(self, state: RunState, ctx_logger) -> None:
        ctx_logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state

    def _fail(self, message: str, step: str, ctx_logger, error: Exception | None = None) -> GenerationRunError:
        self._transition(RunState.FAILED, ctx_logger)
        log_failure(ctx_logger, message, error)
        return GenerationRunError(message, step, error)

    async def run(self, event: WebhookEvent) -> RunResult:
        payload = event.payload
        pr_number = payload.pull_request.number
        ctx_logger = log_for_event(logger, event)
        self.state = RunState.IDLE

        latest_message = await self._source_control.get_latest_commit_message(pr_number)
        if latest_message and GENERATED_TESTS_MARKER in latest_message:
            ctx_logger.info("Latest commit already carries generated tests; skipping")
            self._transition(RunState.DONE, ctx_logger)
            return RunResult(state=RunState.DONE, skipped=True)

        self._transition(RunState.BUILDING_CONTEXT, ctx_logger)
        try:
            with log_timing(ctx_logger, "build_context"):
                context = await self._context_builder(self._source_control, payload, self._settings)
        except Exception as exc:
            raise self._fail("Failed to build pull request context", "build_context", ctx_logger, exc) from exc

        if not context.modified_files:
            ctx_logger.info("No source files to generate tests for")
            self._transition(RunState.DONE, ctx_logger)
            return RunResult(state=RunState.DONE)

        self._transition(RunState.GENERATING, ctx_logger)
        with log_timing(ctx_logger, "generate_tests"):
            generation = await self._generator.generate_tests(context)
        if not generation.success or not generation.tests:
            raise self._fail(
                f"Test generation failed: {generation.error_message or 'no tests returned'}",
                "generate_tests",
                ctx_logger,
            )
        batch = deduplicate_tests(generation.tests)
        ctx_logger.info(f"Generated {len(batch)} test file(s)")

        dropped: List[str] = []
        try:
            clone_url = await self._source_control.clone_url()
            async with self._verifier.workspace(clone_url, context.head_ref or "") as workspace:
                self._transition(RunState.VERIFYING, ctx_logger)
                with log_timing(ctx_logger, "verify_batch"):
                    await self._verifier.verify_batch(batch, workspace)

                failing = [test for test in batch if not test.passed]
                if failing:
                    self._transition(RunState.REGENERATING, ctx_logger)
                    batch, dropped = await self._regenerate(context, batch, failing, workspace, ctx_logger)
        except GenerationRunError:
            raise
        except Exception as exc:
            raise self._fail("Verification failed", "verify", ctx_logger, exc) from exc

        survivors = [test for test in batch if test.passed]
        self._transition(RunState.PUBLISHING, ctx_logger)
        try:
            with log_timing(ctx_logger, "publish_tests"):
                commit_sha = await self._publisher.publish(context, survivors)
        except Exception as exc:
            raise self._fail("Failed to publish generated tests", "publish", ctx_logger, exc) from exc

        self._transition(RunState.DONE, ctx_logger)
        if commit_sha:
            log_success(
                ctx_logger,
                f"Published {len(survivors)} test file(s) in {commit_sha[:8]} "
                f"({len(dropped)} dropped)",
            )
        else:
            ctx_logger.info("No verified tests to publish")
        return RunResult(
            state=RunState.DONE,
            published_tests=survivors,
            commit_sha=commit_sha,
            dropped_tests=dropped,
        )

    async def _regenerate(
        self,
        context: PullRequestContext,
        batch: List[GeneratedTest],
        failing: Sequence[GeneratedTest],
        workspace: Path,
        ctx_logger,
    ) -> Tuple[List[GeneratedTest], List[str]]:
        """Retry failing tests until each compiles or runs out of attempts.

        Returns the batch in its original order with regenerated tests swapped
        in and exhausted ones removed, plus the dropped file names.
        """

        current: Dict[str, GeneratedTest] = {test.file_name: test for test in batch}
        pending: Deque[Tuple[GeneratedTest, int]] = deque(
            (test, self._settings.max_regeneration_attempts) for test in failing
        )
        dropped: List[str] = []

        while pending:
            test, attempts_left = pending.popleft()
            if attempts_left <= 0:
                ctx_logger.warning(f"Dropping {test.file_name}: regeneration attempts exhausted")
                current.pop(test.file_name, None)
                dropped.append(test.file_name)
                continue

            try:
                result = await self._generator.regenerate_test(context, test)
            except Exception as exc:
                raise self._fail(f"Regeneration of {test.file_name} failed", "regenerate_test", ctx_logger, exc) from exc
            attempts_left -= 1

            if not result.success or not result.tests:
                ctx_logger.info(
                    f"Regeneration of {test.file_name} returned nothing usable "
                    f"({attempts_left} attempt(s) left)"
                )
                pending.append((test, attempts_left))
                continue

            candidate = result.tests[0]
            # The file name identifies the test within the batch.
            candidate.file_name = test.file_name
            outcome = await self._verifier.verify_one(candidate, workspace)
            current[test.file_name] = candidate
            if outcome.succeeded:
                ctx_logger.info(f"Regenerated {test.file_name} now compiles")
            else:
                pending.append((candidate, attempts_left))

        return [current[test.file_name] for test in batch if test.file_name in current], dropped


class GenerationProcessor:
    """Queue handler wiring settings and real collaborators into an orchestrator."""

    async def __call__(self, event: WebhookEvent) -> RunResult:
        ctx_logger = log_for_event(logger, event)
        ctx_logger.info("=== PROCESSOR: Starting test generation ===")

        try:
            with log_timing(ctx_logger, "load_configuration"):
                settings = get_settings()
                credentials = settings.require_generation_credentials()
        except SettingsError as exc:
            log_failure(ctx_logger, "Configuration missing", exc)
            raise GenerationRunError("Configuration incomplete", "load_configuration", exc) from exc

        github_client = GitHubInstallationClient(
            base_url=settings.normalized_github_api_base_url,
            app_id=credentials.github_app_id,
            private_key_pem=credentials.github_private_key_pem,
        )
        gemini_client = GeminiClient(credentials.gemini_api_key, model=settings.gemini_model)
        try:
            repository = GitHubRepository(
                github_client,
                installation_id=event.payload.installation_id,
                full_name=event.payload.repository.full_name,
                clone_url=event.payload.repository.clone_url,
            )
            verifier = WorkspaceVerifier(
                generated_tests_dir=settings.generated_tests_dir,
                workspace_root=settings.workspace_root,
            )
            orchestrator = GenerationOrchestrator(repository, gemini_client, verifier, settings)
            result = await orchestrator.run(event)
            ctx_logger.info(
                f"=== PROCESSOR: Run finished (state={result.state.value}, skipped={result.skipped}, "
                f"published={len(result.published_tests)}) ==="
            )
            return result
        finally:
            await gemini_client.aclose()
            await github_client.aclose()
            ctx_logger.debug("Clients closed")
