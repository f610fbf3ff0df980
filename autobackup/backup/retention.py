"""
Retention policy for stored backups.

Stores keep the N most recent artifacts. Artifact names embed a fixed-width
timestamp, so the oldest artifacts are the lexicographically smallest names.
"""

from typing import Iterable, List


def select_expired(names: Iterable[str], keep: int) -> List[str]:
    """
    Pick the artifacts to delete so that only `keep` remain.

    Args:
        names: Artifact names (or keys) currently in the store
        keep: Number of most recent artifacts to keep

    Returns:
        The len(names) - keep oldest names, oldest first; empty when
        keep >= len(names)

    Raises:
        ValueError: If keep is negative
    """
    if keep < 0:
        raise ValueError(f"keep must be non-negative, got {keep}")

    ordered = sorted(names)
    count = len(ordered) - keep

    if count <= 0:
        return []

    return ordered[:count]


def latest(names: Iterable[str]):
    """Return the most recent artifact name, None when there is none."""
    return max(names, default=None)
