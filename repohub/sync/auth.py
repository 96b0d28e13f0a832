from __future__ import annotations

import secrets

from repohub.core.config import AppConfig
from repohub.sync.models import AuthDecision

SECRET_HEADER = "x-sync-secret"


class AuthGate:
    """Shared-secret checks for sync triggers and data writes.

    Only the secret the caller presents is considered. Client address headers
    such as X-Forwarded-For are spoofable and never used as a signal.
    """

    def __init__(self, server_only: bool = False, secret_key: str = ""):
        self.server_only = bool(server_only)
        self.secret_key = secret_key or ""

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "AuthGate":
        return cls(server_only=cfg.auth.server_only, secret_key=cfg.auth.secret_key)

    @property
    def secret_configured(self) -> bool:
        return bool(self.secret_key)

    def _matches(self, presented: str | None) -> bool:
        if not presented or not self.secret_key:
            return False
        return secrets.compare_digest(presented.encode("utf-8"), self.secret_key.encode("utf-8"))

    def is_sync_allowed(self, presented: str | None) -> AuthDecision:
        if not self.server_only:
            return AuthDecision(True)
        if not self.secret_configured:
            return AuthDecision(False, "Sync secret key not configured on server")
        if not presented:
            return AuthDecision(False, "Sync secret key required in server-only mode")
        if not self._matches(presented):
            return AuthDecision(False, "Invalid sync secret key")
        return AuthDecision(True)

    def is_write_allowed(self, presented: str | None) -> AuthDecision:
        # Writes ignore server_only: the secret is always required.
        if not self.secret_configured:
            return AuthDecision(False, "Secret key not configured on server")
        if self._matches(presented):
            return AuthDecision(True)
        return AuthDecision(False, "Write operations require authentication")
