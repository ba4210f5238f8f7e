"""Repository-scoped view over the GitHub installation client."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence
from urllib.parse import urlsplit, urlunsplit

from testgen.github_client import GitHubAPIError, GitHubInstallationClient
from testgen.logger import get_logger, log_with_context
from testgen.models.generation import ChangedFile

logger = get_logger()

KNOWN_STATUSES = frozenset({"added", "modified", "removed"})


def _folded(entry: Mapping[str, Any]) -> Dict[str, Any]:
    return {str(key).lower(): value for key, value in entry.items()}


def _to_changed_file(entry: Mapping[str, Any]) -> ChangedFile | None:
    data = _folded(entry)
    # GitHub API may return "filename" or "path" depending on endpoint
    path = data.get("filename") or data.get("path")
    if not path:
        logger.warning(f"Skipping file entry missing filename/path: {entry}")
        return None

    status = str(data.get("status") or "modified").lower()
    if status not in KNOWN_STATUSES:
        # renamed, copied and changed files still carry a diff against base
        status = "modified"

    change_count = data.get("changes")
    if change_count is None:
        change_count = int(data.get("additions", 0) or 0) + int(data.get("deletions", 0) or 0)

    return ChangedFile(
        path=path,
        status=status,
        change_count=int(change_count or 0),
        patch=data.get("patch"),
    )


class GitHubRepository:
    """Source-control operations for one repository of one installation."""

    def __init__(
        self,
        client: GitHubInstallationClient,
        *,
        installation_id: int,
        full_name: str,
        clone_url: str | None = None,
    ) -> None:
        self._client = client
        self._installation_id = installation_id
        self._full_name = full_name
        # Enterprise hosts deliver their own clone URL with the webhook.
        self._clone_url = clone_url or f"https://github.com/{full_name}.git"
        self._logger = log_with_context(logger, repository=full_name)

    @property
    def full_name(self) -> str:
        return self._full_name

    async def list_changed_files(self, pr_number: int) -> List[ChangedFile]:
        # Failures propagate: there is nothing to generate without the file list.
        entries = await self._client.list_pull_request_files(
            installation_id=self._installation_id,
            full_name=self._full_name,
            pull_number=pr_number,
        )
        files = [changed for changed in map(_to_changed_file, entries) if changed is not None]
        self._logger.debug(f"PR #{pr_number} changed {len(files)} file(s)")
        return files

    async def get_file_content(self, path: str, ref: str | None = None) -> str | None:
        try:
            return await self._client.get_file_content(
                installation_id=self._installation_id,
                full_name=self._full_name,
                path=path,
                ref=ref,
            )
        except GitHubAPIError as exc:
            self._logger.warning(f"Could not fetch {path}@{ref or 'default'} (status={exc.status_code}): {exc}")
            return None

    async def get_latest_commit_message(self, pr_number: int) -> str | None:
        try:
            commits = await self._client.list_pull_request_commits(
                installation_id=self._installation_id,
                full_name=self._full_name,
                pull_number=pr_number,
            )
        except GitHubAPIError as exc:
            self._logger.warning(f"Could not list commits of PR #{pr_number} (status={exc.status_code}): {exc}")
            return None
        if not commits:
            return None
        commit = _folded(commits[-1]).get("commit") or {}
        return _folded(commit).get("message")

    async def search_code(self, term: str, extensions: Sequence[str] = (), limit: int = 2) -> List[str]:
        """Return up to ``limit`` repository paths whose content matches ``term``."""

        try:
            items = await self._client.search_code(
                installation_id=self._installation_id,
                full_name=self._full_name,
                term=term,
                extensions=extensions,
                per_page=limit,
            )
        except GitHubAPIError as exc:
            self._logger.warning(f"Code search for '{term}' failed (status={exc.status_code}): {exc}")
            return []
        paths = [item.get("path") for item in items if isinstance(item, dict) and item.get("path")]
        return paths[:limit]

    async def push_files(self, branch: str, base_commit: str, files: Mapping[str, str], message: str) -> str:
        return await self._client.push_files(
            installation_id=self._installation_id,
            full_name=self._full_name,
            branch=branch,
            base_commit=base_commit,
            files=files,
            message=message,
        )

    async def clone_url(self) -> str:
        token = await self._client.get_installation_token(self._installation_id)
        parts = urlsplit(self._clone_url)
        host = parts.netloc.rpartition("@")[2]
        return urlunsplit(parts._replace(netloc=f"x-access-token:{token.token}@{host}"))
