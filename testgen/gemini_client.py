"""Client wrapper for generating unit tests with the Gemini API."""

from __future__ import annotations

import json
import re
from collections import Counter
from typing import Any, Dict, List

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from testgen.logger import get_logger, log_failure, log_timing, log_with_context
from testgen.models.generation import (
    FileContext,
    GeneratedTest,
    GenerationResult,
    PullRequestContext,
)

logger = get_logger()

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
MAX_RELATED_FILES_IN_PROMPT = 3
RELATED_CONTENT_PREVIEW_CHARS = 500

GENERATION_CONFIG: Dict[str, Any] = {
    "temperature": 0.1,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 8192,
    "responseMimeType": "application/json",
}
SAFETY_SETTINGS: List[Dict[str, str]] = [
    {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

_PYTHON_BLOCK_RE = re.compile(r"```(?:python|py)\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_TEST_MARKER_RE = re.compile(r"^\s*(?:async\s+)?def\s+test_|^\s*class\s+Test", re.MULTILINE)


class GeminiAPIError(RuntimeError):
    """Raised when the Gemini API responds with an error."""


class _FoldedModel(BaseModel):
    """Accept field names and aliases in any letter case."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _fold_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        lookup: Dict[str, str] = {}
        for name, field in cls.model_fields.items():
            target = field.alias or name
            lookup[name.lower()] = target
            lookup[target.lower()] = target
        return {lookup.get(str(key).lower(), key): value for key, value in data.items()}


class GeneratedTestSchema(_FoldedModel):
    class_name: str = Field(alias="className")
    file_name: str = Field(alias="fileName")
    test_code: str = Field(alias="testCode")


class GenerationResponseSchema(_FoldedModel):
    success: bool = False
    generated_tests: List[GeneratedTestSchema] = Field(default_factory=list, alias="generatedTests")


class _Part(_FoldedModel):
    text: str | None = None


class _Content(_FoldedModel):
    parts: List[_Part] = Field(default_factory=list)


class _Candidate(_FoldedModel):
    content: _Content | None = None
    finish_reason: str | None = Field(default=None, alias="finishReason")


class _GenerateContentResponse(_FoldedModel):
    candidates: List[_Candidate] = Field(default_factory=list)

    def first_text(self) -> str | None:
        for candidate in self.candidates:
            if candidate.content and candidate.content.parts:
                return candidate.content.parts[0].text
        return None


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-1.5-pro",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate_tests(self, context: PullRequestContext) -> GenerationResult:
        ctx_logger = log_with_context(logger, repository=context.repository, pr_number=context.pr_number)
        with log_timing(ctx_logger, "build_generation_prompt"):
            prompt = build_generation_prompt(context)
        ctx_logger.info(
            f"Generating tests for {len(context.modified_files)} modified file(s) "
            f"(prompt={len(prompt)} characters, ~{context.estimated_token_count} context tokens)"
        )

        result = await self._complete(f"{GENERATION_SYSTEM_PROMPT}\n\n{prompt}", ctx_logger)
        if result.success:
            ctx_logger.info(f"Gemini returned {len(result.tests)} test file(s)")
        return result

    async def regenerate_test(self, context: PullRequestContext, failing_test: GeneratedTest) -> GenerationResult:
        ctx_logger = log_with_context(
            logger,
            repository=context.repository,
            pr_number=context.pr_number,
            test_file=failing_test.file_name,
        )
        prompt = build_regeneration_prompt(failing_test, context)
        ctx_logger.info(f"Regenerating {failing_test.file_name} (prompt={len(prompt)} characters)")
        return await self._complete(f"{REGENERATION_SYSTEM_PROMPT}\n\n{prompt}", ctx_logger)

    async def _complete(self, text: str, ctx_logger) -> GenerationResult:
        try:
            with log_timing(ctx_logger, "gemini_generate_content"):
                raw_text = await self._generate_content(text)
        except (GeminiAPIError, httpx.HTTPError) as exc:
            log_failure(ctx_logger, "Gemini request failed", exc)
            return GenerationResult(success=False, error_message=str(exc))

        if not raw_text:
            log_failure(ctx_logger, "Empty response from Gemini")
            return GenerationResult(success=False, error_message="Empty response from Gemini")

        return parse_generation_response(raw_text)

    async def _generate_content(self, text: str) -> str | None:
        request_body = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": GENERATION_CONFIG,
            "safetySettings": SAFETY_SETTINGS,
        }
        response = await self._client.post(
            f"/models/{self._model}:generateContent",
            params={"key": self._api_key},
            json=request_body,
        )
        _raise_for_status("generate content", response)
        try:
            envelope = _GenerateContentResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise GeminiAPIError(f"Unexpected Gemini response envelope: {exc}") from exc
        return envelope.first_text()


def _raise_for_status(action: str, response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    detail: Any | None
    try:
        detail = response.json()
    except ValueError:
        detail = response.text
    raise GeminiAPIError(f"Failed to {action}: status={response.status_code}, detail={detail}")


def parse_generation_response(raw_text: str) -> GenerationResult:
    """Parse the model's JSON answer, falling back to fenced python blocks."""

    try:
        parsed = GenerationResponseSchema.model_validate(json.loads(raw_text))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.error(f"Failed to parse Gemini JSON response: {exc}")
        fallback = extract_code_blocks(raw_text)
        if fallback:
            logger.warning(f"Recovered {len(fallback)} test file(s) from fenced code blocks")
            return GenerationResult(success=True, tests=fallback)
        return GenerationResult(
            success=False,
            error_message="Failed to parse response and extract code blocks",
        )

    tests = [
        GeneratedTest(class_name=item.class_name, file_name=item.file_name, test_source=item.test_code)
        for item in parsed.generated_tests
    ]
    return GenerationResult(success=parsed.success, tests=tests)


def extract_code_blocks(text: str) -> List[GeneratedTest]:
    tests: List[GeneratedTest] = []
    for index, match in enumerate(_PYTHON_BLOCK_RE.finditer(text), start=1):
        code = match.group(1).strip()
        if not _TEST_MARKER_RE.search(code):
            continue
        tests.append(
            GeneratedTest(
                class_name=f"ExtractedTest{index}",
                file_name=f"test_extracted_{index}.py",
                test_source=code,
            )
        )
    return tests


GENERATION_SYSTEM_PROMPT = """You are an expert Python developer and unit testing specialist. Your task is to analyze pull request changes and generate comprehensive unit tests that cover the modified code.

REQUIREMENTS:
1. Generate unit tests using the pytest framework
2. Focus ONLY on testing the modified/added code, not existing functionality
3. Create tests for edge cases, error scenarios and happy paths
4. Mock dependencies with unittest.mock (Mock, MagicMock, AsyncMock, patch)
5. Follow the AAA pattern (Arrange, Act, Assert)
6. Use descriptive test function names that explain what is being tested
7. Use pytest.mark.asyncio for coroutine functions

RESPONSE FORMAT:
Return a JSON object with this structure:
{
  "success": true,
  "generatedTests": [
    {
      "className": "TestClassName",
      "fileName": "test_module_name.py",
      "testCode": "complete Python test module source"
    }
  ]
}

TESTING BEST PRACTICES:
- Test one thing per test function
- Use meaningful test data
- Mock external dependencies
- Test both success and failure scenarios
- Use pytest.raises for expected exceptions
- Test boundary conditions
- Use pytest.mark.parametrize for multiple similar scenarios"""

REGENERATION_SYSTEM_PROMPT = """You are an expert Python developer and unit testing specialist specializing in fixing broken unit tests.

Your task is to analyze a failing pytest module and its compile errors, then generate a corrected version that compiles successfully.

REQUIREMENTS:
1. Generate unit tests using the pytest framework
2. Fix ALL errors identified in the error analysis
3. Maintain the original test intent and coverage goals
4. Mock dependencies with unittest.mock
5. Follow the AAA pattern (Arrange, Act, Assert)
6. Address common issues:
   - Missing or wrong imports
   - Indentation and syntax errors
   - Unterminated strings or brackets
   - Misuse of await outside async functions

RESPONSE FORMAT:
Return a JSON object with this structure:
{
  "success": true,
  "generatedTests": [
    {
      "className": "TestClassName",
      "fileName": "test_module_name.py",
      "testCode": "complete corrected Python test module source"
    }
  ]
}"""


def _append_file_section(lines: List[str], file: FileContext) -> None:
    lines.append(f"### File: {file.path}")
    lines.append(f"- **Status**: {file.status}")
    lines.append(f"- **Changes**: {file.change_count} lines")
    lines.append("")

    for title, names in (
        ("Classes Modified/Added", file.type_names),
        ("Functions Modified/Added", file.callable_names),
        ("Dependencies", file.references),
    ):
        if names:
            lines.append(f"**{title}:**")
            lines.extend(f"- {name}" for name in names)
            lines.append("")

    if not file.content:
        return
    lines.append("**Relevant Code Content:**")
    lines.extend(["```python", file.content, "```", ""])
    if file.status == "modified" and file.patch:
        lines.append("**Changes in PR (Patch):**")
        lines.extend(["```diff", file.patch, "```", ""])


def build_generation_prompt(context: PullRequestContext) -> str:
    lines: List[str] = [
        "# Pull Request Analysis for Unit Test Generation",
        f"**PR #{context.pr_number}**: {context.title or 'untitled'}",
        f"**Repository**: {context.repository}",
        "",
    ]
    if context.description:
        lines.extend([f"**Description**: {context.description}", ""])

    lines.append("## Modified Files Analysis")
    for file in context.modified_files:
        _append_file_section(lines, file)

    if context.related_files:
        lines.append("## Related Files Context")
        for related in context.related_files[:MAX_RELATED_FILES_IN_PROMPT]:
            lines.append(f"### {related.path}")
            if related.references:
                lines.append("**Dependencies:** " + ", ".join(related.references))
            if related.content:
                lines.extend(["```python", related.content[:RELATED_CONTENT_PREVIEW_CHARS], "```"])
            lines.append("")

    lines.extend(
        [
            "## Task",
            "Generate comprehensive unit tests for the modified code above. Focus on:",
            "1. Testing new functions and classes",
            "2. Testing modified logic and edge cases",
            "3. Ensuring proper error handling coverage",
            "4. Mocking dependencies appropriately",
            "5. Following Python and pytest best practices",
            "6. Returning only valid, parsable JSON in the requested format",
        ]
    )
    return "\n".join(lines)


def build_regeneration_prompt(failing_test: GeneratedTest, context: PullRequestContext) -> str:
    outcome = failing_test.verification
    diagnostics = list(outcome.diagnostics) if outcome else []

    lines: List[str] = [
        "# Unit Test Error Analysis and Regeneration",
        "",
        "## Failed Test Information",
        f"**Class Name**: {failing_test.class_name}",
        f"**File Name**: {failing_test.file_name}",
    ]
    if outcome is not None:
        lines.append(f"**Verification Time**: {outcome.duration_seconds:.3f}s")
    lines.extend(
        [
            "",
            "## Original Context Summary",
            f"**Repository**: {context.repository}",
            f"**PR**: #{context.pr_number} - {context.title or 'untitled'}",
            "",
            "## Error Analysis",
            f"**Total Errors**: {len(diagnostics)}",
            "",
        ]
    )

    if diagnostics:
        lines.append("### Error Summary by Type:")
        for code, count in Counter(d.code for d in diagnostics).most_common():
            lines.append(f"- **{code}**: {count} occurrence(s)")
        lines.append("")

        lines.append("### Detailed Error Analysis:")
        for diagnostic in sorted(diagnostics, key=lambda d: (d.line, d.column)):
            lines.append(f"**Error {diagnostic.code}** (Line {diagnostic.line}, Column {diagnostic.column})")
            lines.append(f"- **Severity**: {diagnostic.severity}")
            lines.append(f"- **Message**: {diagnostic.message}")
            lines.append("")

    lines.extend(
        [
            "## Original Failing Test Code",
            "```python",
            failing_test.test_source,
            "```",
            "",
            "## Task Instructions",
            "Analyze the errors above and generate a corrected version of the test module that:",
            "1. Fixes all errors identified in the error analysis",
            "2. Maintains the original test intent and coverage objectives",
            "3. Uses correct imports for every dependency",
            "4. Follows Python and pytest best practices",
            "5. Returns only valid, parsable JSON in the requested format",
        ]
    )
    return "\n".join(lines)
