"""Change detection between a fresh fetch and the stored latest record."""

from dataclasses import dataclass
from typing import Optional

from ..storage.types import BackupMetadata


@dataclass
class ChangeDecision:
    changed: bool
    reason: str  # first_seen, hash_changed, unchanged, below_threshold
    previous_hash: Optional[str] = None
    current_hash: Optional[str] = None
    size_delta: int = 0


class ChangeDetector:
    """Flags a URL as changed when its comparable hash differs.

    The comparable hash is the normalized hash, or the raw hash for records
    written before normalization existed. Both sides fall back together so a
    legacy record is never compared against a normalized one.
    """

    def detect(
        self,
        current: BackupMetadata,
        previous: Optional[BackupMetadata],
        min_change_size: int = 0,
    ) -> ChangeDecision:
        if previous is None:
            return ChangeDecision(
                changed=True,
                reason="first_seen",
                current_hash=current.comparable_hash,
                size_delta=current.size,
            )

        if current.normalized_hash and previous.normalized_hash:
            previous_hash, current_hash = previous.normalized_hash, current.normalized_hash
        else:
            previous_hash, current_hash = previous.content_hash, current.content_hash

        size_delta = abs(current.size - previous.size)
        if previous_hash == current_hash:
            return ChangeDecision(False, "unchanged", previous_hash, current_hash, size_delta)

        if min_change_size > 0 and size_delta < min_change_size:
            return ChangeDecision(False, "below_threshold", previous_hash, current_hash, size_delta)

        return ChangeDecision(True, "hash_changed", previous_hash, current_hash, size_delta)
