"""Per-engine variable store."""

from __future__ import annotations

from typing import Any

from .errors import InvalidParameterError, VariableNotFoundError

_MISSING = object()


class MemoryStore:
    """Mapping from variable name to a structured value.

    One store is created per engine instance and is never shared with a
    parent, child or sibling engine.
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    @staticmethod
    def _check_name(name: Any) -> None:
        if not isinstance(name, str) or not name:
            raise InvalidParameterError(f"variable name must be a non-empty str, got {name!r}")

    def set(self, name: str, value: Any) -> None:
        """Create or overwrite ``name``."""
        self._check_name(name)
        self._values[name] = value

    def get(self, name: str, default: Any = None) -> Any:
        """Return the stored value, or ``default`` when ``name`` is absent.

        Never raises: a ``name`` that is not a string is simply absent.
        """
        if not isinstance(name, str):
            return default
        return self._values.get(name, default)

    def final(self, name: str) -> Any:
        """Return the raw stored value for ``name``.

        Raises
        ------
        VariableNotFoundError
            If ``name`` was never set.
        """
        value = self._values.get(name, _MISSING) if isinstance(name, str) else _MISSING
        if value is _MISSING:
            raise VariableNotFoundError(name)
        return value

    def names(self) -> list[str]:
        return list(self._values)

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy of the current contents."""
        return dict(self._values)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"MemoryStore({len(self._values)} vars)"
