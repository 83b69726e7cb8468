"""
Local Repository Client: a plain directory standing in for the remote.

Useful offline and in tests. Semantics follow the GitHub adapter: version
tokens are content hashes, writes with a stale token are rejected, and side
branches live under `.branches/<name>/`.
"""

import hashlib
import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

from gitdeck.domain.constants import DEFAULT_COMMIT_LIMIT
from gitdeck.domain.errors import ConflictError, DocumentNotFoundError, RepositoryError
from gitdeck.domain.models import CommitInfo
from gitdeck.domain.ports import RepositoryClient, VersionToken

logger = logging.getLogger(__name__)

BRANCHES_DIR = ".branches"
COMMITS_FILE = ".gitdeck-commits.jsonl"


def _token_for(content: bytes) -> VersionToken:
    return VersionToken(hashlib.sha1(content).hexdigest())


class LocalRepositoryClient(RepositoryClient):
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _branch_root(self, branch: str | None) -> Path:
        if not branch:
            return self.root
        return self.root / BRANCHES_DIR / branch.replace("/", "__")

    async def list_directories(self) -> list[str]:
        return sorted(
            p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith(".")
        )

    async def read_file(self, path: str, branch: str | None = None) -> tuple[str, VersionToken]:
        target = self._branch_root(branch) / path
        if not target.is_file():
            raise DocumentNotFoundError(path)
        raw = target.read_bytes()
        return raw.decode("utf-8"), _token_for(raw)

    async def write_file(
        self,
        path: str,
        content: str,
        version_token: VersionToken | None = None,
        message: str = "",
        branch: str | None = None,
    ) -> VersionToken:
        branch_root = self._branch_root(branch)
        if branch and not branch_root.is_dir():
            raise RepositoryError(f"No such branch: {branch}")

        target = branch_root / path
        current = _token_for(target.read_bytes()) if target.is_file() else None
        if current != version_token:
            raise ConflictError(path)

        raw = content.encode("utf-8")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(raw)
        token = _token_for(raw)
        self._append_commit(message or f"update {path}", branch)
        logger.debug(f"[local] wrote {path} on {branch or 'main'} -> {token[:7]}")
        return token

    async def list_commits(self, limit: int = DEFAULT_COMMIT_LIMIT) -> list[CommitInfo]:
        log_file = self.root / COMMITS_FILE
        if not log_file.exists():
            return []
        commits = []
        for line in log_file.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            data = json.loads(line)
            if data.get("branch"):
                continue
            commits.append(CommitInfo(message=data["message"], id=data["id"], date=data["date"]))
        return list(reversed(commits))[:limit]

    async def create_branch(self, name: str, from_branch: str | None = None) -> None:
        source = self._branch_root(from_branch)
        target = self._branch_root(name)
        if target.exists():
            raise RepositoryError(f"Branch already exists: {name}")
        target.mkdir(parents=True)
        for child in source.iterdir():
            if child.is_dir() and not child.name.startswith("."):
                shutil.copytree(child, target / child.name)
        logger.info(f"[local] created branch {name}")

    async def delete_branch(self, name: str) -> None:
        target = self._branch_root(name)
        if target.exists():
            shutil.rmtree(target)
            logger.info(f"[local] deleted branch {name}")

    async def list_branches(self) -> list[str]:
        branches_dir = self.root / BRANCHES_DIR
        if not branches_dir.is_dir():
            return []
        return sorted(p.name.replace("__", "/") for p in branches_dir.iterdir() if p.is_dir())

    def _append_commit(self, message: str, branch: str | None) -> None:
        date = datetime.now(timezone.utc).isoformat(timespec="seconds")
        commit_id = hashlib.sha1(f"{date}:{branch}:{message}".encode()).hexdigest()[:7]
        with open(self.root / COMMITS_FILE, "a", encoding="utf-8") as f:
            f.write(json.dumps({"message": message, "id": commit_id, "date": date, "branch": branch}))
            f.write("\n")
