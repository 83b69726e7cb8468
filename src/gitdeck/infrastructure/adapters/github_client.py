import base64
import logging
import re
from typing import Any

import httpx

from gitdeck.domain.constants import DEFAULT_COMMIT_LIMIT, GITHUB_API_URL, REQUEST_TIMEOUT
from gitdeck.domain.errors import (
    ConflictError,
    DocumentNotFoundError,
    RepositoryError,
    TransientNetworkError,
)
from gitdeck.domain.models import CommitInfo
from gitdeck.domain.ports import RepositoryClient, VersionToken

_REPO_URL_RE = re.compile(r"github\.com[/:]([^/]+)/([^/.]+)")


def parse_repo_url(url: str) -> tuple[str, str]:
    """Extract (owner, repo) from a GitHub URL such as https://github.com/me/cards(.git)."""
    match = _REPO_URL_RE.search(url)
    if not match:
        raise ValueError(f"Invalid GitHub repository URL: {url}")
    return match.group(1), match.group(2)


class GitHubRepositoryClient(RepositoryClient):
    """Adapter for a GitHub repository via the REST contents API."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        branch: str | None = None,
        base_url: str = GITHUB_API_URL,
        client: httpx.AsyncClient | None = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._client = client
        self.logger.debug(
            f"GitHubRepositoryClient initialized for {owner}/{repo} "
            f"(branch={branch or 'default'}, api={self.base_url})"
        )

    @classmethod
    def from_url(cls, repo_url: str, token: str, **kwargs: Any) -> "GitHubRepositoryClient":
        owner, repo = parse_repo_url(repo_url)
        return cls(owner, repo, token, **kwargs)

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    # ---------- RepositoryClient ----------

    async def list_directories(self) -> list[str]:
        data = await self._get_json(f"{self._repo_path}/contents/", params=self._ref())
        if not isinstance(data, list):
            return []
        return [
            item["name"]
            for item in data
            if item.get("type") == "dir" and not item["name"].startswith(".")
        ]

    async def read_file(self, path: str, branch: str | None = None) -> tuple[str, VersionToken]:
        data = await self._get_json(
            f"{self._repo_path}/contents/{path}", params=self._ref(branch), path=path
        )
        if isinstance(data, list) or data.get("type") != "file":
            raise DocumentNotFoundError(path)

        raw = base64.b64decode(data.get("content", "").replace("\n", ""))
        return raw.decode("utf-8"), VersionToken(data["sha"])

    async def write_file(
        self,
        path: str,
        content: str,
        version_token: VersionToken | None = None,
        message: str = "",
        branch: str | None = None,
    ) -> VersionToken:
        body: dict[str, Any] = {
            "message": message or f"update {path}",
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if version_token:
            body["sha"] = version_token
        target = branch or self.branch
        if target:
            body["branch"] = target

        resp = await self._request("PUT", f"{self._repo_path}/contents/{path}", json=body)
        if resp.status_code in (409, 412) or (
            resp.status_code == 422 and "sha" in resp.text
        ):
            raise ConflictError(path)
        self._raise_for_status(resp, path)

        data = resp.json()
        sha = (data.get("content") or {}).get("sha", "")
        self.logger.info(f"[github] wrote {path} on {target or 'default'} -> {sha[:7]}")
        return VersionToken(sha)

    async def list_commits(self, limit: int = DEFAULT_COMMIT_LIMIT) -> list[CommitInfo]:
        params: dict[str, Any] = {"per_page": limit}
        if self.branch:
            params["sha"] = self.branch
        data = await self._get_json(f"{self._repo_path}/commits", params=params)
        return [
            CommitInfo(
                message=c["commit"]["message"],
                id=c["sha"][:7],
                date=(c["commit"].get("committer") or {}).get("date", ""),
            )
            for c in data
        ]

    async def create_branch(self, name: str, from_branch: str | None = None) -> None:
        base = from_branch or self.branch or await self._default_branch()
        ref = await self._get_json(f"{self._repo_path}/git/ref/heads/{base}")
        resp = await self._request(
            "POST",
            f"{self._repo_path}/git/refs",
            json={"ref": f"refs/heads/{name}", "sha": ref["object"]["sha"]},
        )
        self._raise_for_status(resp, name)
        self.logger.info(f"[github] created branch {name} from {base}")

    async def delete_branch(self, name: str) -> None:
        resp = await self._request("DELETE", f"{self._repo_path}/git/refs/heads/{name}")
        if resp.status_code == 404:
            return
        self._raise_for_status(resp, name)
        self.logger.info(f"[github] deleted branch {name}")

    async def validate(self) -> bool:
        try:
            await self._get_json(self._repo_path)
            return True
        except RepositoryError as e:
            self.logger.warning(f"[github] connection check failed: {e}")
            return False

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ---------- HTTP plumbing ----------

    def _ref(self, branch: str | None = None) -> dict[str, str]:
        ref = branch or self.branch
        return {"ref": ref} if ref else {}

    async def _default_branch(self) -> str:
        info = await self._get_json(self._repo_path)
        return info.get("default_branch", "main")

    async def _get_json(self, url: str, params: dict | None = None, path: str | None = None) -> Any:
        resp = await self._request("GET", url, params=params)
        self._raise_for_status(resp, path or url)
        return resp.json()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=REQUEST_TIMEOUT)
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timeout talking to GitHub: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"GitHub unreachable: {e}") from e

    def _raise_for_status(self, resp: httpx.Response, path: str) -> None:
        if resp.is_success:
            return
        if resp.status_code == 404:
            raise DocumentNotFoundError(path)
        if resp.status_code in (409, 412):
            raise ConflictError(path)
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientNetworkError(f"GitHub returned {resp.status_code} for {path}")
        self.logger.error(f"GitHub call failed: {resp.status_code} {resp.text[:200]}")
        raise RepositoryError(f"GitHub returned {resp.status_code} for {path}")
