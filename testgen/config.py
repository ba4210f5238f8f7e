"""Application configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Tuple

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, BaseModel, Field, ValidationError

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class SettingsError(RuntimeError):
    """Raised when application configuration is invalid or incomplete."""


@dataclass(frozen=True)
class GenerationCredentials:
    github_app_id: int
    github_private_key_pem: str
    github_webhook_secret: str
    gemini_api_key: str


class Settings(BaseModel):
    """Runtime settings loaded from environment variables."""

    github_api_base_url: AnyHttpUrl = "https://api.github.com"
    github_app_id: int | None = None
    github_private_key_pem: str | None = None
    github_webhook_secret: str | None = None
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-pro"

    max_files_per_pr: int = Field(default=10, ge=1)
    max_related_files: int = Field(default=7, ge=0)
    max_tokens_per_file: int = Field(default=2000, ge=1)
    max_total_tokens: int = Field(default=2_000_000, ge=1)
    max_regeneration_attempts: int = Field(default=5, ge=0)

    generated_tests_dir: str = "tests/generated"
    source_extensions: Tuple[str, ...] = (".py",)
    workspace_root: Path | None = None

    @property
    def normalized_github_api_base_url(self) -> str:
        """Return the GitHub API base URL without a trailing slash."""
        return str(self.github_api_base_url).rstrip("/")

    def require_generation_credentials(self) -> GenerationCredentials:
        """Ensure GitHub and Gemini secrets are configured and return them."""

        missing = []
        if self.github_app_id is None:
            missing.append("GITHUB_APP_ID")
        if not self.github_private_key_pem:
            missing.append("GITHUB_PRIVATE_KEY")
        if not self.github_webhook_secret:
            missing.append("GITHUB_WEBHOOK_SECRET")
        if not self.gemini_api_key:
            missing.append("GEMINI_API_KEY")

        if missing:
            missing_vars = ", ".join(missing)
            raise SettingsError(
                "Test generation is not configured. Missing environment variables: "
                f"{missing_vars}."
            )

        return GenerationCredentials(
            github_app_id=int(self.github_app_id),
            github_private_key_pem=self.github_private_key_pem,
            github_webhook_secret=self.github_webhook_secret,
            gemini_api_key=self.gemini_api_key,
        )


_INT_SETTINGS: Final[dict[str, str]] = {
    "MAX_FILES_PER_PR": "max_files_per_pr",
    "MAX_RELATED_FILES": "max_related_files",
    "MAX_TOKENS_PER_FILE": "max_tokens_per_file",
    "MAX_TOTAL_TOKENS": "max_total_tokens",
    "MAX_REGENERATION_ATTEMPTS": "max_regeneration_attempts",
}


def _parse_int_env(name: str, raw_value: str | None) -> int | None:
    """Convert an environment variable string to an integer, if set."""

    if raw_value is None or not raw_value.strip():
        return None
    try:
        return int(raw_value)
    except ValueError as exc:
        raise SettingsError(f"Invalid value for {name}. It must be an integer.") from exc


def _parse_extensions(raw_value: str | None) -> Tuple[str, ...] | None:
    """Parse a comma separated list like ``.py,.pyi`` into normalized suffixes."""

    if raw_value is None or not raw_value.strip():
        return None
    extensions = []
    for item in raw_value.split(","):
        item = item.strip().lower()
        if not item:
            continue
        extensions.append(item if item.startswith(".") else f".{item}")
    return tuple(extensions) or None


def _build_settings() -> Settings:
    values: dict[str, object] = {}

    github_api_base_url = os.getenv("GITHUB_API_BASE_URL")
    if github_api_base_url:
        values["github_api_base_url"] = github_api_base_url

    github_app_id = _parse_int_env("GITHUB_APP_ID", os.getenv("GITHUB_APP_ID"))
    if github_app_id is not None:
        values["github_app_id"] = github_app_id

    values["github_private_key_pem"] = os.getenv("GITHUB_PRIVATE_KEY")
    values["github_webhook_secret"] = os.getenv("GITHUB_WEBHOOK_SECRET")
    values["gemini_api_key"] = os.getenv("GEMINI_API_KEY")

    gemini_model = os.getenv("GEMINI_MODEL")
    if gemini_model:
        values["gemini_model"] = gemini_model

    for env_name, field_name in _INT_SETTINGS.items():
        parsed = _parse_int_env(env_name, os.getenv(env_name))
        if parsed is not None:
            values[field_name] = parsed

    generated_tests_dir = os.getenv("GENERATED_TESTS_DIR")
    if generated_tests_dir:
        values["generated_tests_dir"] = generated_tests_dir.strip("/")

    extensions = _parse_extensions(os.getenv("SOURCE_EXTENSIONS"))
    if extensions:
        values["source_extensions"] = extensions

    workspace_root = os.getenv("WORKSPACE_ROOT")
    if workspace_root:
        values["workspace_root"] = Path(workspace_root).expanduser()

    try:
        return Settings(**values)
    except ValidationError as exc:
        raise SettingsError(f"Invalid application configuration: {exc}") from exc


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return _build_settings()


def get_settings() -> Settings:
    """Retrieve cached application settings."""
    return _cached_settings()


def reset_settings_cache() -> None:
    """Clear the cached settings (primarily for tests)."""
    _cached_settings.cache_clear()
