"""
Cross-resource references.

A property value may embed ``${<resource-id>.<attribute>}``. When a string
consists of exactly one reference it resolves to the attribute's value
with its own type; otherwise each reference is interpolated as text.
Attribute paths may be dotted to reach into nested outputs
(``${db.endpoint.port}``).
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Set

REFERENCE_PATTERN = re.compile(
    r"\$\{([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_-]*(?:\.[A-Za-z0-9_-]+)*)\}"
)


class Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = Unknown()


@dataclass(frozen=True)
class Reference:
    """A single ``${id.attr}`` reference found in a property value."""

    resource_id: str
    attribute: str

    @property
    def expression(self) -> str:
        return f"${{{self.resource_id}.{self.attribute}}}"


# Resolves a reference to a value (or UNKNOWN); raises on a bad reference.
Lookup = Callable[[Reference], Any]


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for key in sorted(value):
            yield from _iter_strings(value[key])
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


def find_references(value: Any) -> List[Reference]:
    """Return every reference in a (possibly nested) value, in order found."""
    refs = []
    for text in _iter_strings(value):
        for match in REFERENCE_PATTERN.finditer(text):
            refs.append(Reference(match.group(1), match.group(2)))
    return refs


def referenced_ids(value: Any) -> Set[str]:
    """Logical IDs referenced anywhere in a value."""
    return {ref.resource_id for ref in find_references(value)}


def contains_reference(value: Any) -> bool:
    return any(REFERENCE_PATTERN.search(text) for text in _iter_strings(value))


def contains_unknown(value: Any) -> bool:
    if isinstance(value, Unknown):
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def _resolve_string(text: str, lookup: Lookup) -> Any:
    match = REFERENCE_PATTERN.fullmatch(text)
    if match:
        return lookup(Reference(match.group(1), match.group(2)))

    unknown = False

    def substitute(m: "re.Match[str]") -> str:
        nonlocal unknown
        resolved = lookup(Reference(m.group(1), m.group(2)))
        if isinstance(resolved, Unknown):
            unknown = True
            return ""
        return str(resolved)

    result = REFERENCE_PATTERN.sub(substitute, text)
    return UNKNOWN if unknown else result


def resolve(value: Any, lookup: Lookup) -> Any:
    """Return a copy of ``value`` with every reference replaced."""
    if isinstance(value, str):
        return _resolve_string(value, lookup)
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, lookup) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve(v, lookup) for v in value)
    return value


def get_attribute(attributes: Dict[str, Any], path: str) -> Any:
    """
    Walk a dotted attribute path.

    Raises:
        KeyError: If any segment of the path is missing.
    """
    current: Any = attributes
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(
            current
        ):
            current = current[int(segment)]
        else:
            raise KeyError(path)
    return current
