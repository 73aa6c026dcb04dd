"""Git integration: CLI runner, worktree provisioning and PR status."""

from .github import GithubClient, GithubError, PullRequestStatus
from .production import ensure_production_clone, production_clone_info, production_clone_path
from .runner import (
    FakeGitRunner,
    GitCommandError,
    GitNotFoundError,
    GitResult,
    GitRunner,
    GitRunnerError,
    GitTimeoutError,
    git_failed,
    git_ok,
)
from .worktrees import (
    BranchStatus,
    PreparedWorktree,
    WorktreeRepoRoot,
    clean_repository_url,
    detect_repo_changes,
    extract_worktree_repo_root,
    get_branch_status,
    has_unpushed_commits,
    is_git_repository,
    is_worktree_dir,
    prepare_worktree,
    remove_worktree,
    repo_name_from_url,
    resolve_default_branch,
    sanitize_repo_name,
)

__all__ = [
    "BranchStatus",
    "FakeGitRunner",
    "GitCommandError",
    "GitNotFoundError",
    "GitResult",
    "GitRunner",
    "GitRunnerError",
    "GitTimeoutError",
    "GithubClient",
    "GithubError",
    "PreparedWorktree",
    "PullRequestStatus",
    "WorktreeRepoRoot",
    "clean_repository_url",
    "detect_repo_changes",
    "ensure_production_clone",
    "extract_worktree_repo_root",
    "get_branch_status",
    "has_unpushed_commits",
    "is_git_repository",
    "is_worktree_dir",
    "prepare_worktree",
    "production_clone_info",
    "production_clone_path",
    "remove_worktree",
    "repo_name_from_url",
    "resolve_default_branch",
    "sanitize_repo_name",
    "git_failed",
    "git_ok",
]
