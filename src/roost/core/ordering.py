"""Dense ordering over top-level sessions.

Top-level sessions carry an integer position. New sessions are prepended with
``min - 1`` so positions drift negative; a crashed writer can also leave
duplicates behind. Every full-state load re-checks the order and rewrites it
to ``0..n-1``.
"""

from collections.abc import Iterable, Sequence


def needs_normalization(positions: Sequence[int]) -> bool:
    """Return True unless positions are exactly 0, 1, ..., n-1."""
    return any(pos != idx for idx, pos in enumerate(positions))


def normalized_positions(
    ordered: Iterable[tuple[str, int]],
) -> list[tuple[str, int]]:
    """Compute position rewrites for an already-sorted (name, position) list.

    Args:
        ordered: Pairs in display order, i.e. sorted by (position, name).

    Returns:
        (name, new_position) for every entry whose position differs from its
        index. Empty when the ordering is already dense.
    """
    return [
        (name, idx) for idx, (name, pos) in enumerate(ordered) if pos != idx
    ]


def prepend_position(existing: Iterable[int]) -> int:
    """Position that places a new session before all existing ones."""
    positions = list(existing)
    if not positions:
        return 0
    return min(positions) - 1
