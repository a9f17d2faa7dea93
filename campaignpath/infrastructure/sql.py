"""Small SQL-building helpers for IN (...) filters."""

from __future__ import annotations

from collections.abc import Collection


def placeholders(count: int) -> str:
    return ", ".join("?" * count)


def worker_filter(column: str, worker_names: Collection[str] | None) -> tuple[str, list[str]]:
    """
    Build an "AND <column> IN (...)" fragment for an optional worker scope.

    None or an empty collection means every worker, which yields no fragment.
    """
    if not worker_names:
        return "", []
    names = sorted(worker_names)
    return f" AND {column} IN ({placeholders(len(names))})", names
