"""Concrete collaborators behind the workflow's narrow interfaces."""

from .agents import AgentAuth
from .db import TigerDatabaseForker, parse_env_output
from .git import AgentBranchNamer, GitRepoResolver, parse_github_url, validate_branch_name
from .github import GhHostAuth, GhPrLookup

__all__ = [
    "AgentAuth",
    "AgentBranchNamer",
    "GhHostAuth",
    "GhPrLookup",
    "GitRepoResolver",
    "TigerDatabaseForker",
    "parse_env_output",
    "parse_github_url",
    "validate_branch_name",
]
