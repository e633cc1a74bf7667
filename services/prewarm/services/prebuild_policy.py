"""Prebuild policy decisions.

Pure functions over a WorkspaceConfig. The per-provider `prebuilds` block
of the config is merged over DEFAULT_PREBUILD_POLICY; keys the file leaves
out keep their defaults.
"""

from typing import Any

from prewarm.logging_config import get_logger
from prewarm.services.config_provider import WorkspaceConfig

logger = get_logger(__name__)

DEFAULT_PREBUILD_POLICY: dict[str, bool] = {
    "addCheck": True,
    "addBadge": False,
    "addComment": False,
    "addLabel": False,
    "branches": False,
    "master": True,
    "pullRequests": True,
    "pullRequestsFromForks": False,
}

DECORATION_ACTIONS = frozenset({"addCheck", "addBadge", "addComment", "addLabel"})

# addCheck value that lets a failed prebuild block merging
PREVENT_MERGE_ON_ERROR = "prevent-merge-on-error"


def merged_policy(config: WorkspaceConfig, provider: str = "github") -> dict[str, Any]:
    return {**DEFAULT_PREBUILD_POLICY, **config.prebuilds.get(provider, {})}


def has_prebuild_task(config: WorkspaceConfig, include_before: bool = True) -> bool:
    for task in config.tasks:
        if task.init or task.prebuild:
            return True
        if include_before and task.before:
            return True
    return False


def should_run_prebuild(
    config: WorkspaceConfig | None,
    is_default_branch: bool,
    is_pr: bool,
    is_fork: bool,
    provider: str = "github",
) -> bool:
    """Whether an event on this branch or pull request should be prebuilt."""
    if config is None:
        return False
    if not has_prebuild_task(config):
        return False

    policy = merged_policy(config, provider)
    if is_pr:
        if is_fork:
            return bool(policy["pullRequestsFromForks"])
        return bool(policy["pullRequests"])
    if is_default_branch:
        return bool(policy["master"])
    return bool(policy["branches"])


def should_do(config: WorkspaceConfig | None, action: str, provider: str = "github") -> bool:
    """Whether a status decoration (check, badge, comment, label) is enabled."""
    if config is None:
        return False
    if action not in DECORATION_ACTIONS:
        logger.warning("Unknown prebuild policy action", action=action)
        return False
    return bool(merged_policy(config, provider)[action])


def commit_status_state(config: WorkspaceConfig | None, conclusion: str) -> str:
    """Commit status to report for a finished prebuild's conclusion.

    Only prevent-merge-on-error reports the real conclusion; otherwise the
    check always passes.
    """
    if config is not None and merged_policy(config)["addCheck"] == PREVENT_MERGE_ON_ERROR:
        return conclusion
    return "success"


def should_prebuild(config: WorkspaceConfig | None) -> bool:
    """Top-level gate: only a repository config with an init or prebuild task prebuilds."""
    if config is None or config.origin != "repo":
        return False
    return has_prebuild_task(config, include_before=False)
