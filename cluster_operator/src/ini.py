from __future__ import annotations

from collections.abc import Callable, Iterator

from cluster_operator.src.errors import ConfigurationParseError, ConfigurationSerializeError

_COMMENT_PREFIXES = ("#", ";")
_QUOTES = ('"', "`")


def _parse_value(raw: str) -> str:
    """Strip an inline comment, or unwrap a quoted value verbatim."""
    value = raw.strip()
    if value[:1] in _QUOTES:
        closing = value.find(value[0], 1)
        if closing > 0:
            return value[1:closing]
    comment = min((i for i in map(value.find, _COMMENT_PREFIXES) if i >= 0), default=-1)
    if comment >= 0:
        value = value[:comment].strip()
    return value


def _render_value(value: str) -> str:
    if not any(prefix in value for prefix in _COMMENT_PREFIXES):
        return value
    quote = '"' if "`" in value else "`"
    return f"{quote}{value}{quote}"


class ConfigurationDocument:
    """Ordered ``key = value`` document with a single unnamed section.

    This is the shape of ``rabbitmq.conf``.  A ``#`` or ``;`` ends a value
    unless the value is wrapped in double quotes or backticks.  Assigning to
    an existing key replaces its value where it stands, so overlays override
    earlier entries without reordering the document.  :meth:`render` is the
    one canonical writer: two documents with the same entries always render
    to the same bytes, and values holding comment characters come back quoted.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    @classmethod
    def parse(cls, text: str) -> ConfigurationDocument:
        document = cls()
        document.append(text)
        return document

    def append(self, text: str) -> None:
        """Parse *text* and merge its entries into this document."""
        for line_number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line or line.startswith(_COMMENT_PREFIXES):
                continue
            if line.startswith("[") and line.endswith("]"):
                raise ConfigurationParseError(
                    f"section headers are not supported: {line!r}", line_number
                )
            key, separator, value = line.partition("=")
            key = key.strip()
            if not separator or not key:
                raise ConfigurationParseError(f"expected 'key = value', got: {line!r}", line_number)
            self._entries[key] = _parse_value(value)

    def set(self, key: str, value: str) -> None:
        self._entries[key] = value

    def get(self, key: str) -> str | None:
        return self._entries.get(key)

    def remove_keys(self, predicate: Callable[[str], bool]) -> None:
        for key in [key for key in self._entries if predicate(key)]:
            del self._entries[key]

    def keys(self) -> list[str]:
        return list(self._entries)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._entries.items())

    def __len__(self) -> int:
        return len(self._entries)

    def render(self) -> str:
        lines = []
        for key, value in self._entries.items():
            if "\n" in key or "\n" in value or "\r" in key or "\r" in value:
                raise ConfigurationSerializeError(
                    f"configuration entry {key!r} spans multiple lines"
                )
            lines.append(f"{key} = {_render_value(value)}\n")
        return "".join(lines)
