"""Per-kind attribute schemas."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from terrapin.declarations.values import (
    BoolValue,
    ListValue,
    MapValue,
    NumberValue,
    RefValue,
    StringValue,
    Value,
    from_plain,
)

ATTRIBUTE_TYPES = ('string', 'number', 'bool', 'list', 'map')

_VALUE_CLASSES = {
    'string': StringValue,
    'number': NumberValue,
    'bool': BoolValue,
    'list': ListValue,
    'map': MapValue,
}


@dataclass(frozen=True)
class AttributeSpec:
    """Schema for a single declared attribute.

    References are accepted wherever a string is expected, including list
    elements of type string.
    """

    type: str
    required: bool = False
    default: Any = None
    element: Optional[str] = None  # element type for lists
    description: str = ''

    def __post_init__(self):
        if self.type not in ATTRIBUTE_TYPES:
            raise ValueError(f"Unknown attribute type: {self.type}")
        if self.element is not None and self.element not in ATTRIBUTE_TYPES:
            raise ValueError(f"Unknown list element type: {self.element}")

    def check(self, value: Value) -> Optional[str]:
        """Return a description of the mismatch, or None if the value fits."""
        if not _matches(self.type, value):
            return f"expected {self.type}, got {value.type_name}"
        if self.type == 'list' and self.element:
            for index, item in enumerate(value.items):
                if not _matches(self.element, item):
                    return f"element {index}: expected {self.element}, got {item.type_name}"
        return None


def _matches(type_name: str, value: Value) -> bool:
    if isinstance(value, RefValue):
        return type_name == 'string'
    return isinstance(value, _VALUE_CLASSES[type_name])


@dataclass(frozen=True)
class KindSchema:
    """Attributes a resource kind accepts and outputs its provider returns."""

    kind: str
    attributes: Dict[str, AttributeSpec] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ('id',)
    description: str = ''

    def defaults(self) -> Dict[str, Value]:
        """Values for optional attributes that carry a default."""
        return {
            name: from_plain(spec.default)
            for name, spec in self.attributes.items()
            if spec.default is not None
        }

    def has_output(self, name: str) -> bool:
        return name in self.outputs


BUILTIN_SCHEMAS: Dict[str, KindSchema] = {
    'network': KindSchema(
        kind='network',
        description='Isolated virtual network',
        attributes={
            'cidr': AttributeSpec('string', required=True),
            'dns_support': AttributeSpec('bool', default=True),
            'tags': AttributeSpec('map'),
        },
        outputs=('id', 'cidr'),
    ),
    'subnet': KindSchema(
        kind='subnet',
        description='Address range inside a network',
        attributes={
            'network_id': AttributeSpec('string', required=True),
            'cidr': AttributeSpec('string', required=True),
            'zone': AttributeSpec('string'),
            'public_ip_on_launch': AttributeSpec('bool', default=False),
            'tags': AttributeSpec('map'),
        },
        outputs=('id', 'cidr', 'zone'),
    ),
    'firewall': KindSchema(
        kind='firewall',
        description='Set of ingress rules attached to virtual machines',
        attributes={
            'network_id': AttributeSpec('string', required=True),
            'description': AttributeSpec('string', default='managed by terrapin'),
            'ingress': AttributeSpec('list', element='map'),
            'tags': AttributeSpec('map'),
        },
        outputs=('id',),
    ),
    'vm': KindSchema(
        kind='vm',
        description='Virtual machine',
        attributes={
            'subnet_id': AttributeSpec('string', required=True),
            'image': AttributeSpec('string', required=True),
            'size': AttributeSpec('string', required=True),
            'firewall_ids': AttributeSpec('list', element='string'),
            'key_name': AttributeSpec('string'),
            'user_data': AttributeSpec('string'),
            'tags': AttributeSpec('map'),
        },
        outputs=('id', 'private_ip', 'public_ip', 'state'),
    ),
}
