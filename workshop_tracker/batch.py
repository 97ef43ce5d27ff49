"""
Per-item results for multi-row operations.

Stage reorders and column reprioritizations write
one row at a time and commit each write on its own. A failure part-way
through does not undo the writes already made; the caller gets the full
result list and decides whether to re-fetch.
"""
from typing import Any, List, NamedTuple, Optional

from .errors import StoreError, WorkshopError


class ItemResult(NamedTuple):
    key: Any
    ok: bool
    error: Optional[Exception] = None

    @property
    def message(self) -> Optional[str]:
        if self.error is None:
            return None
        if isinstance(self.error, WorkshopError):
            return self.error.message
        return "Database error"


class BatchResult:
    def __init__(self, results: Optional[List[ItemResult]] = None):
        self.results: List[ItemResult] = list(results or [])

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    def succeeded(self, key) -> None:
        self.results.append(ItemResult(key, True))

    def failed_with(self, key, error: Exception) -> None:
        self.results.append(ItemResult(key, False, error))

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failures(self) -> List[ItemResult]:
        return [r for r in self.results if not r.ok]

    def raise_for_failures(self) -> None:
        """Raise one aggregate error when any item failed.

        If every failure is the same client-side error (e.g. all unknown ids)
        that error is raised as-is; anything else becomes a ``StoreError``.
        """
        failures = self.failures
        if not failures:
            return
        first = failures[0].error
        same_kind = all(type(f.error) is type(first) for f in failures)
        if isinstance(first, WorkshopError) and not isinstance(first, StoreError) and same_kind:
            raise first
        raise StoreError(f"{len(failures)} of {len(self.results)} updates failed")
