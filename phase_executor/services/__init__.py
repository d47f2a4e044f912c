"""Version control and review platform services.

Services:
- GitService: git branch, push and merge operations
- PRService: GitHub pull request operations via gh
"""

from .git_service import GitError, GitService, MergeAttempt
from .pr_service import PRInfo, PRService, PRStatus

__all__ = [
    "GitError",
    "GitService",
    "MergeAttempt",
    "PRInfo",
    "PRService",
    "PRStatus",
]
