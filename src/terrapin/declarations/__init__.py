"""Declaration loading: parse resource declarations into a validated set."""

from .ref import ResourceRef
from .values import (
    BoolValue,
    ListValue,
    MapValue,
    NumberValue,
    RefValue,
    StringValue,
    Value,
)
from .schema import AttributeSpec, KindSchema, BUILTIN_SCHEMAS
from .models import DeclarationSet, ResourceDeclaration
from .loader import DeclarationLoader, load_declarations

__all__ = [
    "ResourceRef",
    "Value",
    "StringValue",
    "NumberValue",
    "BoolValue",
    "RefValue",
    "ListValue",
    "MapValue",
    "AttributeSpec",
    "KindSchema",
    "BUILTIN_SCHEMAS",
    "ResourceDeclaration",
    "DeclarationSet",
    "DeclarationLoader",
    "load_declarations",
]
