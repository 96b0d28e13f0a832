from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from repohub.core.errors import UnknownScopeError


class Platform(str, Enum):
    WINDOWS = "windows"
    MACOS = "macos"
    UBUNTU = "ubuntu"
    DEBIAN = "debian"
    ARCH = "arch"
    FEDORA = "fedora"


class _AnyRepository:
    def __repr__(self) -> str:
        return "ANY_REPOSITORY"


# Scope filter matching every repository of a platform (NULL included).
ANY_REPOSITORY = _AnyRepository()


@dataclass(frozen=True)
class SyncScope:
    """A unit of sync: one platform, optionally narrowed to one repository.

    ``repository`` is a concrete name, ``None`` for records stored without a
    repository, or ``ANY_REPOSITORY`` for a platform-wide scope.
    """

    key: str
    platform_id: Platform
    repository: object
    label: str

    @property
    def platform_wide(self) -> bool:
        return self.repository is ANY_REPOSITORY

    def contains(self, platform_id: str, repository: str | None) -> bool:
        if platform_id != self.platform_id.value:
            return False
        return self.platform_wide or repository == self.repository


# Order matters: the auto-sync sweep walks scopes in this sequence.
SCOPES: tuple[SyncScope, ...] = (
    SyncScope("debian", Platform.DEBIAN, ANY_REPOSITORY, "Debian"),
    SyncScope("ubuntu", Platform.UBUNTU, ANY_REPOSITORY, "Ubuntu"),
    SyncScope("windows", Platform.WINDOWS, None, "Windows (winget)"),
    SyncScope("macos", Platform.MACOS, ANY_REPOSITORY, "macOS (Homebrew)"),
    SyncScope("fedora", Platform.FEDORA, ANY_REPOSITORY, "Fedora"),
    SyncScope("arch", Platform.ARCH, "official", "Arch Linux"),
    SyncScope("aur", Platform.ARCH, "aur", "Arch User Repository"),
)

SCOPES_BY_KEY: dict[str, SyncScope] = {s.key: s for s in SCOPES}


def get_scope(key: str) -> SyncScope:
    try:
        return SCOPES_BY_KEY[(key or "").strip().lower()]
    except KeyError:
        raise UnknownScopeError(key) from None


# Rows seeded into the platforms table by init-platforms.
PLATFORM_SEED: tuple[dict[str, str], ...] = (
    {"id": "windows", "name": "Windows", "package_manager": "winget", "description": "Windows Package Manager"},
    {"id": "macos", "name": "macOS", "package_manager": "brew", "description": "Homebrew formulae"},
    {"id": "ubuntu", "name": "Ubuntu", "package_manager": "apt", "description": "Ubuntu archive"},
    {"id": "debian", "name": "Debian", "package_manager": "apt", "description": "Debian archive"},
    {"id": "arch", "name": "Arch Linux", "package_manager": "pacman", "description": "Arch official repositories and AUR"},
    {"id": "fedora", "name": "Fedora", "package_manager": "dnf", "description": "Fedora repositories"},
)
