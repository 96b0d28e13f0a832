from __future__ import annotations


class RepoHubError(Exception):
    """Base class for errors raised by the sync engine."""


class ConfigurationError(RepoHubError):
    pass


class AuthDenied(RepoHubError):
    def __init__(self, reason: str | None):
        self.reason = reason or "Unauthorized"
        super().__init__(self.reason)


class SyncAlreadyRunning(RepoHubError):
    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"Sync already in progress: {scope}")


class UnknownScopeError(RepoHubError, KeyError):
    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"Unknown sync scope: {scope}")

    def __str__(self) -> str:
        return self.args[0]


class UpstreamFetchError(RepoHubError):
    """Upstream registry unreachable, or it answered with something unusable."""


class StoreError(RepoHubError):
    """Persistence failure during upsert, prune or metadata writes."""


class RunSuperseded(RepoHubError):
    """The slot was taken over by a newer run; this run must stop writing."""

    def __init__(self, scope: str, run_id: str):
        self.scope = scope
        self.run_id = run_id
        super().__init__(f"Run {run_id} for {scope} was superseded by a newer run")
