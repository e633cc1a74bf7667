"""Exception types shared across webhook intake, prebuild orchestration and provider clients."""

from typing import Any


class PrewarmError(Exception):
    """Base class for all service errors."""


class WebhookAuthError(PrewarmError):
    """An inbound webhook could not be attributed to a trusted user."""


class WebhookPayloadError(PrewarmError):
    """An inbound webhook payload is missing fields required to process it."""


class UnsupportedProviderError(PrewarmError):
    """No context parser is registered for the host of a context URL."""

    def __init__(self, context_url: str) -> None:
        super().__init__(f"Cannot find context parser for URL: {context_url}")
        self.context_url = context_url


class UnknownWorkspaceError(PrewarmError):
    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Unknown workspace id: {workspace_id}")
        self.workspace_id = workspace_id


class WorkspaceRunningError(PrewarmError):
    """A workspace already has a running instance; starting it again is refused."""

    def __init__(self, message: str, instance: Any) -> None:
        super().__init__(message)
        self.instance = instance


class BlockedUserError(PrewarmError):
    """A blocked user attempted to trigger a prebuild."""


class LockNotAcquiredError(PrewarmError):
    """A distributed mutex could not be acquired within its retry budget."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Failed to acquire lock: {key}")
        self.key = key


class ProviderAPIError(PrewarmError):
    """A Git hosting provider API call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or "Not Found" in str(self)


class MissingTokenError(PrewarmError):
    """The user has no stored provider token for a host."""

    def __init__(self, host: str) -> None:
        super().__init__(f"No access token for {host}. Connect the account to continue.")
        self.host = host
