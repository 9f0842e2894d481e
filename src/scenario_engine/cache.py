"""Scenario-scoped variable cache."""

from __future__ import annotations

from typing import Any, Iterator


class VariableCache:
    """Key/value store written by action results, read by later actions.

    Owned by exactly one scenario and only mutated by that scenario's
    in-flight action, so no locking is involved.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def snapshot(self) -> dict[str, Any]:
        """Return a plain copy usable as an expression scope."""
        return dict(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __repr__(self) -> str:
        return f'VariableCache({sorted(self._values)!r})'
