from __future__ import annotations

from typing import Callable, Protocol, Sequence

from repohub.sync.models import PackageRecord

# progress(current, total, item_label)
FetchProgress = Callable[[int, int, str], None]


class Fetcher(Protocol):
    """Turns one upstream registry listing into package records for a scope."""

    def fetch(self, progress: FetchProgress) -> Sequence[PackageRecord]: ...
