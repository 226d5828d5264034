# credvault/batch.py
"""Per-item outcome accumulator for bulk operations (migration, key rotation)."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ItemOutcome:
    item_id: str
    outcome: Outcome
    error: Optional[str] = None


@dataclass
class BatchOutcome:
    """
    Collects one ItemOutcome per processed item. A failed item never aborts
    the batch; it is recorded here instead.
    """
    items: List[ItemOutcome] = field(default_factory=list)
    _counts: Dict[Outcome, int] = field(default_factory=lambda: {o: 0 for o in Outcome}, repr=False)

    def _record(self, item: ItemOutcome) -> None:
        self.items.append(item)
        self._counts[item.outcome] += 1

    def succeeded(self, item_id: str) -> None:
        self._record(ItemOutcome(item_id, Outcome.SUCCEEDED))

    def failed(self, item_id: str, error: str) -> None:
        self._record(ItemOutcome(item_id, Outcome.FAILED, error))

    def skipped(self, item_id: str, reason: Optional[str] = None) -> None:
        self._record(ItemOutcome(item_id, Outcome.SKIPPED, reason))

    def _count(self, outcome: Outcome) -> int:
        return self._counts[outcome]

    @property
    def succeeded_count(self) -> int:
        return self._count(Outcome.SUCCEEDED)

    @property
    def failed_count(self) -> int:
        return self._count(Outcome.FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(Outcome.SKIPPED)

    @property
    def failures(self) -> List[ItemOutcome]:
        return [item for item in self.items if item.outcome is Outcome.FAILED]
