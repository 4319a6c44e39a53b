"""Tagged attribute values.

Declaration attributes are parsed from YAML into a small closed set of value
types. A string of the exact form ``${kind.name.attribute}`` becomes a
RefValue pointing at another resource's output; it stays unresolved until the
executor substitutes the referenced resource's recorded outputs.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Tuple, Union

from terrapin.declarations.ref import KIND_PATTERN, NAME_PATTERN, ResourceRef

_REF_RE = re.compile(rf'^\$\{{({KIND_PATTERN})\.({NAME_PATTERN})\.([a-z_][a-z0-9_]*)\}}$')

# Maps (target, attribute) to the concrete output value
OutputLookup = Callable[[ResourceRef, str], Any]


class InvalidValue(Exception):
    """Raised by from_plain for data that cannot become a Value."""


@dataclass(frozen=True)
class StringValue:
    value: str
    type_name = 'string'

    def to_plain(self) -> Any:
        return self.value

    def references(self) -> Iterator["RefValue"]:
        return iter(())

    def resolve(self, lookup: OutputLookup) -> Any:
        return self.value


@dataclass(frozen=True)
class NumberValue:
    value: Union[int, float]
    type_name = 'number'

    def to_plain(self) -> Any:
        return self.value

    def references(self) -> Iterator["RefValue"]:
        return iter(())

    def resolve(self, lookup: OutputLookup) -> Any:
        return self.value


@dataclass(frozen=True)
class BoolValue:
    value: bool
    type_name = 'bool'

    def to_plain(self) -> Any:
        return self.value

    def references(self) -> Iterator["RefValue"]:
        return iter(())

    def resolve(self, lookup: OutputLookup) -> Any:
        return self.value


@dataclass(frozen=True)
class RefValue:
    """Reference to an output attribute of another resource."""

    target: ResourceRef
    attribute: str
    type_name = 'ref'

    def to_plain(self) -> Any:
        return f"${{{self.target}.{self.attribute}}}"

    def references(self) -> Iterator["RefValue"]:
        yield self

    def resolve(self, lookup: OutputLookup) -> Any:
        return lookup(self.target, self.attribute)


@dataclass(frozen=True)
class ListValue:
    items: Tuple["Value", ...]
    type_name = 'list'

    def to_plain(self) -> Any:
        return [item.to_plain() for item in self.items]

    def references(self) -> Iterator[RefValue]:
        for item in self.items:
            yield from item.references()

    def resolve(self, lookup: OutputLookup) -> Any:
        return [item.resolve(lookup) for item in self.items]


@dataclass(frozen=True)
class MapValue:
    entries: Tuple[Tuple[str, "Value"], ...]
    type_name = 'map'

    def to_plain(self) -> Any:
        return {key: value.to_plain() for key, value in self.entries}

    def references(self) -> Iterator[RefValue]:
        for _, value in self.entries:
            yield from value.references()

    def resolve(self, lookup: OutputLookup) -> Any:
        return {key: value.resolve(lookup) for key, value in self.entries}


Value = Union[StringValue, NumberValue, BoolValue, RefValue, ListValue, MapValue]


def from_plain(raw: Any) -> Value:
    """Build a Value from YAML data.

    Raises:
        InvalidValue: If the data has an unsupported type or a malformed reference
    """
    # bool is a subclass of int, check it first
    if isinstance(raw, bool):
        return BoolValue(raw)
    if isinstance(raw, (int, float)):
        return NumberValue(raw)
    if isinstance(raw, str):
        match = _REF_RE.match(raw)
        if match:
            return RefValue(
                target=ResourceRef(kind=match.group(1), name=match.group(2)),
                attribute=match.group(3)
            )
        if '${' in raw:
            raise InvalidValue(f"Malformed reference {raw!r} (expected ${{kind.name.attribute}})")
        return StringValue(raw)
    if isinstance(raw, list):
        return ListValue(tuple(from_plain(item) for item in raw))
    if isinstance(raw, dict):
        entries = []
        for key in raw:
            if not isinstance(key, str):
                raise InvalidValue(f"Map keys must be strings, got {key!r}")
            entries.append((key, from_plain(raw[key])))
        return MapValue(tuple(sorted(entries, key=lambda entry: entry[0])))
    if raw is None:
        raise InvalidValue("Null values are not allowed; omit the attribute instead")
    raise InvalidValue(f"Unsupported value type: {type(raw).__name__}")


def attributes_to_plain(attributes: Dict[str, Value]) -> Dict[str, Any]:
    """Canonical plain form of an attribute mapping, used for diffing and persistence."""
    return {name: attributes[name].to_plain() for name in sorted(attributes)}
