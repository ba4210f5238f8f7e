"""GitHub API client helpers."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping
from urllib.parse import quote

import httpx
import jwt


class GitHubAPIError(RuntimeError):
    """Raised when a GitHub API request fails."""

    def __init__(self, message: str, status_code: int, response_body: Any | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


DEFAULT_ACCEPT_HEADER = "application/vnd.github+json"
DEFAULT_API_VERSION = "2022-11-28"
PAGE_SIZE = 100


@dataclass
class InstallationToken:
    token: str
    expires_at: datetime
    permissions: Dict[str, Any] | None = None

    def is_active(self, *, skew_seconds: int = 60) -> bool:
        """Return True if the token is still valid accounting for clock skew."""

        return self.expires_at - timedelta(seconds=skew_seconds) > datetime.now(timezone.utc)


class GitHubInstallationClient:
    """GitHub App helper for installation-scoped API operations."""

    def __init__(
        self,
        *,
        base_url: str,
        app_id: int,
        private_key_pem: str,
        timeout: float = 20.0,
        user_agent: str = "testgen/1.0",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._user_agent = user_agent
        self._app_id = app_id
        # Normalize private key: handle escaped newlines from environment variables
        self._private_key = private_key_pem.replace("\\n", "\n")
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={
                "User-Agent": self._user_agent,
                "Accept": DEFAULT_ACCEPT_HEADER,
                "X-GitHub-Api-Version": DEFAULT_API_VERSION,
            },
        )
        self._owns_client = client is None
        self._installation_tokens: Dict[int, InstallationToken] = {}

    def _build_jwt(self) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iat": int((now - timedelta(seconds=60)).timestamp()),
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": str(self._app_id),
        }
        try:
            return jwt.encode(payload, self._private_key, algorithm="RS256")
        except Exception as exc:
            raise GitHubAPIError(
                f"Failed to encode JWT: {exc}. Check that GITHUB_PRIVATE_KEY is a valid RSA private key in PEM format.",
                0,
                None,
            ) from exc

    def _app_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._build_jwt()}",
            "Accept": DEFAULT_ACCEPT_HEADER,
            "X-GitHub-Api-Version": DEFAULT_API_VERSION,
        }

    @staticmethod
    def _installation_headers(token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": DEFAULT_ACCEPT_HEADER,
            "X-GitHub-Api-Version": DEFAULT_API_VERSION,
        }

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        params: Dict[str, Any] | None = None,
        json: Any | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, headers=headers, params=params, json=json)
        except httpx.HTTPError as exc:
            raise GitHubAPIError(f"GitHub API request to {url} failed: {exc}", 0, None) from exc
        if response.status_code >= 400:
            detail: Any | None
            if response.content:
                try:
                    detail = response.json()
                except ValueError:
                    detail = response.text
            else:
                detail = None
            raise GitHubAPIError(
                f"GitHub API request to {url} failed with status {response.status_code}.",
                response.status_code,
                detail,
            )
        return response

    async def _fetch_installation_token(
        self, installation_id: int, permissions: Dict[str, Any] | None = None
    ) -> InstallationToken:
        payload = {"permissions": permissions} if permissions else None
        response = await self._request(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            headers=self._app_headers(),
            json=payload,
        )
        data = response.json()
        token_value = data.get("token")
        if not token_value:
            raise GitHubAPIError(
                "GitHub did not return an installation token.",
                response.status_code,
                data,
            )

        expires_at_raw = data.get("expires_at")
        if not expires_at_raw:
            raise GitHubAPIError(
                "GitHub did not return an expires_at value for installation token.",
                response.status_code,
                data,
            )
        return InstallationToken(
            token=token_value,
            expires_at=_parse_github_timestamp(expires_at_raw),
            permissions=data.get("permissions"),
        )

    async def get_installation_token(
        self, installation_id: int, permissions: Dict[str, Any] | None = None
    ) -> InstallationToken:
        cached = self._installation_tokens.get(installation_id)
        if cached and cached.is_active():
            return cached

        token = await self._fetch_installation_token(installation_id, permissions)
        self._installation_tokens[installation_id] = token
        return token

    @staticmethod
    def _split_full_name(full_name: str) -> tuple[str, str]:
        if "/" not in full_name:
            raise ValueError(f"Repository full name '{full_name}' is invalid.")
        owner, repo = full_name.split("/", 1)
        return owner, repo

    async def _installation_request(
        self,
        installation_id: int,
        method: str,
        url: str,
        *,
        params: Dict[str, Any] | None = None,
        json: Any | None = None,
    ) -> httpx.Response:
        token = await self.get_installation_token(installation_id)
        return await self._request(
            method,
            url,
            headers=self._installation_headers(token.token),
            params=params,
            json=json,
        )

    async def _paginate(self, installation_id: int, url: str, what: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            response = await self._installation_request(
                installation_id, "GET", url, params={"per_page": PAGE_SIZE, "page": page}
            )
            batch = response.json()
            if not isinstance(batch, list):
                raise GitHubAPIError(
                    f"Unexpected response while listing {what}.",
                    response.status_code,
                    batch,
                )
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
            page += 1
        return items

    async def list_pull_request_files(
        self,
        *,
        installation_id: int,
        full_name: str,
        pull_number: int,
    ) -> List[Dict[str, Any]]:
        owner, repo = self._split_full_name(full_name)
        return await self._paginate(
            installation_id, f"/repos/{owner}/{repo}/pulls/{pull_number}/files", "pull request files"
        )

    async def list_pull_request_commits(
        self,
        *,
        installation_id: int,
        full_name: str,
        pull_number: int,
    ) -> List[Dict[str, Any]]:
        owner, repo = self._split_full_name(full_name)
        return await self._paginate(
            installation_id, f"/repos/{owner}/{repo}/pulls/{pull_number}/commits", "pull request commits"
        )

    async def get_file_content(
        self,
        *,
        installation_id: int,
        full_name: str,
        path: str,
        ref: str | None = None,
    ) -> str:
        """Return the decoded text of ``path`` at ``ref``."""

        owner, repo = self._split_full_name(full_name)
        response = await self._installation_request(
            installation_id,
            "GET",
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            params={"ref": ref} if ref else None,
        )
        data = response.json()
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise GitHubAPIError(f"'{path}' is not a file.", response.status_code, data)
        encoded = data.get("content") or ""
        if data.get("encoding", "base64") != "base64":
            return encoded
        try:
            return base64.b64decode(encoded).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise GitHubAPIError(f"Could not decode content of '{path}'.", response.status_code, None) from exc

    async def search_code(
        self,
        *,
        installation_id: int,
        full_name: str,
        term: str,
        extensions: Iterable[str] = (),
        per_page: int = 3,
    ) -> List[Dict[str, Any]]:
        qualifiers = [term, f"repo:{full_name}"]
        qualifiers.extend(f"extension:{ext.lstrip('.')}" for ext in extensions)
        response = await self._installation_request(
            installation_id,
            "GET",
            "/search/code",
            params={"q": " ".join(qualifiers), "per_page": per_page},
        )
        data = response.json()
        items = data.get("items") if isinstance(data, dict) else None
        return items if isinstance(items, list) else []

    async def push_files(
        self,
        *,
        installation_id: int,
        full_name: str,
        branch: str,
        base_commit: str,
        files: Mapping[str, str],
        message: str,
    ) -> str:
        """Commit ``files`` on top of ``base_commit`` and move ``branch`` to it.

        Blobs, tree and commit are unreachable until the final ref update, so a
        failure part-way leaves the branch untouched.
        """

        owner, repo = self._split_full_name(full_name)
        base = await self._installation_request(
            installation_id, "GET", f"/repos/{owner}/{repo}/git/commits/{base_commit}"
        )
        base_tree = base.json()["tree"]["sha"]

        tree_entries = []
        for path, content in files.items():
            blob = await self._installation_request(
                installation_id,
                "POST",
                f"/repos/{owner}/{repo}/git/blobs",
                json={"content": content, "encoding": "utf-8"},
            )
            tree_entries.append({"path": path, "mode": "100644", "type": "blob", "sha": blob.json()["sha"]})

        tree = await self._installation_request(
            installation_id,
            "POST",
            f"/repos/{owner}/{repo}/git/trees",
            json={"base_tree": base_tree, "tree": tree_entries},
        )
        commit = await self._installation_request(
            installation_id,
            "POST",
            f"/repos/{owner}/{repo}/git/commits",
            json={"message": message, "tree": tree.json()["sha"], "parents": [base_commit]},
        )
        commit_sha = commit.json()["sha"]
        await self._installation_request(
            installation_id,
            "PATCH",
            f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
            json={"sha": commit_sha, "force": False},
        )
        return commit_sha

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def _parse_github_timestamp(raw: str) -> datetime:
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw).astimezone(timezone.utc)
