"""Per-key cooldown table.

Maps each key to the earliest time its next attempt may run.  A key with no
entry is immediately eligible.  Entries only ever move forward in time.
"""

import logging
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class CooldownRegistry:
    """Key -> next-eligible-time table.

    Pure data: the dispatcher is its only writer.
    """

    def __init__(self) -> None:
        self._eligible_at: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._eligible_at)

    def __contains__(self, key: str) -> bool:
        return key in self._eligible_at

    def eligible_at(self, key: str) -> Optional[float]:
        """Return the stored next-eligible time, or ``None`` if never recorded."""
        return self._eligible_at.get(key)

    def is_eligible(self, key: str, now: float) -> bool:
        """Return ``True`` iff *key* may run at *now*."""
        eligible_at = self._eligible_at.get(key)
        return eligible_at is None or now >= eligible_at

    def remaining(self, key: str, now: float) -> float:
        """Seconds until *key* becomes eligible (``0.0`` if it already is)."""
        eligible_at = self._eligible_at.get(key)
        if eligible_at is None:
            return 0.0
        return max(0.0, eligible_at - now)

    def record_attempt(self, key: str, completed_at: float, cooldown: float) -> float:
        """Record a completed attempt and return the new eligible time.

        The stored value is ``completed_at + cooldown`` unless an entry
        further in the future already exists, in which case that entry is
        kept.

        Args:
            key: Key whose attempt completed.
            completed_at: Completion timestamp.
            cooldown: Cooldown duration in seconds.

        Returns:
            The key's eligible time after the update.
        """
        candidate = completed_at + cooldown
        current = self._eligible_at.get(key)
        if current is not None and current > candidate:
            logger.debug("Cooldown for key kept at %.0f (candidate %.0f is earlier)", current, candidate)
            candidate = current
        self._eligible_at[key] = candidate
        return candidate

    def snapshot(self) -> Dict[str, float]:
        """Copy of the whole table."""
        return dict(self._eligible_at)

    def load(self, entries: Mapping[str, float]) -> int:
        """Merge persisted entries, honouring forward-only movement.

        Returns:
            Number of entries applied.
        """
        applied = 0
        for key, eligible_at in entries.items():
            try:
                value = float(eligible_at)
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed cooldown entry: %r", eligible_at)
                continue
            current = self._eligible_at.get(key)
            if current is None or value > current:
                self._eligible_at[key] = value
                applied += 1
        return applied
