"""Stage-owned configuration with consumed-keys enforcement."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable

_MISSING = object()


@dataclass
class ConfigNamespace:
    """One stage's options, read through typed getters.

    Each getter marks its key as read and remembers the value it returned
    (the default included), so `effective_values()` shows what the stage
    actually ran with. `assert_consumed()` fails on any key no getter read,
    which turns a misspelled option into a build error.
    """

    data: Mapping[str, Any]
    path: str
    _read: set[str] = field(default_factory=set, init=False, repr=False)
    _nested: dict[str, "ConfigNamespace"] = field(default_factory=dict, init=False, repr=False)
    _values: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def label(self, key: str) -> str:
        return f"{self.path}.{key}" if self.path else key

    def unconsumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(str(key) for key in self.data if key not in self._read))

    def assert_consumed(self) -> None:
        leftover = self.unconsumed_keys()
        if leftover:
            read = ", ".join(sorted(self._read)) or "<none>"
            raise ValueError(
                f"Unknown config keys under {self.path or '<root>'}: {', '.join(leftover)} (consumed: {read})"
            )
        for child in self._nested.values():
            child.assert_consumed()

    def effective_values(self) -> dict[str, Any]:
        values = dict(self._values)
        for key, child in self._nested.items():
            nested = child.effective_values()
            if nested:
                values[key] = nested
        return values

    def _take(self, key: str, default: Any, expected: tuple[type, ...], type_label: str) -> tuple[Any, bool]:
        """Mark `key` read and return (value, from_default) after a type check."""

        if not isinstance(key, str) or not key.strip():
            raise TypeError("ConfigNamespace key must be a non-empty string")
        key = key.strip()
        if key in self._nested:
            raise ValueError(f"{self.label(key)} already accessed as a nested namespace")
        self._read.add(key)
        if key in self.data:
            value, from_default = self.data[key], False
        elif default is _MISSING:
            raise ValueError(f"Missing required config key: {self.label(key)}")
        else:
            value, from_default = default, True
        # bool is an int subclass; only accept it where a bool is asked for.
        wrong_bool = isinstance(value, bool) and bool not in expected
        if value is not None and (wrong_bool or not isinstance(value, expected)):
            raise TypeError(f"{self.label(key)} must be {type_label} (type={type(value).__name__})")
        return value, from_default

    def _keep(self, key: str, value: Any) -> Any:
        self._values[key.strip()] = value
        return value

    def namespace(self, key: str, *, default: Mapping[str, Any] | None | object = _MISSING) -> "ConfigNamespace":
        key = key.strip()
        if key in self._nested:
            return self._nested[key]
        self._read.add(key)
        raw = self.data.get(key)
        if raw is None:
            if default is _MISSING:
                raise ValueError(f"Missing required config namespace: {self.label(key)}")
            raw = dict(default or {})  # type: ignore[call-overload]
        elif not isinstance(raw, Mapping):
            raise TypeError(f"{self.label(key)} must be a mapping (type={type(raw).__name__})")
        child = ConfigNamespace(dict(raw), path=self.label(key))
        self._nested[key] = child
        return child

    def get_bool(self, key: str, *, default: bool | object = _MISSING) -> bool:
        value, _ = self._take(key, default, (bool,), "a boolean")
        if value is None:
            raise TypeError(f"{self.label(key.strip())} must be a boolean (type=NoneType)")
        return self._keep(key, value)

    def get_int(
        self,
        key: str,
        *,
        default: int | object = _MISSING,
        min_value: int | None = None,
        max_value: int | None = None,
    ) -> int:
        value, from_default = self._take(key, default, (int,), "an int")
        if value is None:
            raise TypeError(f"{self.label(key.strip())} must be an int (type=NoneType)")
        if not from_default:
            if min_value is not None and value < min_value:
                raise ValueError(f"{self.label(key.strip())} must be >= {min_value} (got {value})")
            if max_value is not None and value > max_value:
                raise ValueError(f"{self.label(key.strip())} must be <= {max_value} (got {value})")
        return self._keep(key, int(value))

    def get_str(
        self,
        key: str,
        *,
        default: str | None | object = _MISSING,
        allow_empty: bool = False,
        choices: Iterable[str] | None = None,
    ) -> str | None:
        value, _ = self._take(key, default, (str,), "a string")
        if value is None:
            return self._keep(key, None)
        value = value.strip()
        if not value and not allow_empty:
            raise ValueError(f"{self.label(key.strip())} cannot be empty")
        if choices is not None:
            allowed = sorted({str(item).strip() for item in choices if str(item).strip()})
            if value not in allowed:
                raise ValueError(f"{self.label(key.strip())} must be one of: {', '.join(allowed)} (got {value!r})")
        return self._keep(key, value)

    def get_list_str(
        self,
        key: str,
        *,
        default: list[str] | tuple[str, ...] | object = _MISSING,
        allow_empty: bool = False,
    ) -> list[str]:
        value, _ = self._take(key, default, (list, tuple), "a list[str]")
        label = self.label(key.strip())
        if value is None:
            raise TypeError(f"{label} must be a list[str] (type=NoneType)")
        items: list[str] = []
        for idx, item in enumerate(value):
            if not isinstance(item, str) or not item.strip():
                raise ValueError(f"{label}[{idx}] must be a non-empty string (got {item!r})")
            items.append(item.strip())
        if not items and not allow_empty:
            raise ValueError(f"{label} cannot be empty")
        return self._keep(key, items)
