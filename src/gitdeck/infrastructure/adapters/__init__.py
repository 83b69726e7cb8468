# Infrastructure Repository Adapters Package
from .github_client import GitHubRepositoryClient, parse_repo_url
from .local_client import LocalRepositoryClient

__all__ = ["GitHubRepositoryClient", "LocalRepositoryClient", "parse_repo_url"]
