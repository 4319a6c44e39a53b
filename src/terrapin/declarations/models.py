"""Resource declaration models."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional

from terrapin.declarations.ref import ResourceRef
from terrapin.declarations.schema import KindSchema
from terrapin.declarations.values import OutputLookup, RefValue, Value, attributes_to_plain


@dataclass(frozen=True, eq=False)
class ResourceDeclaration:
    """A desired resource as written by the operator."""

    kind: str
    name: str
    attributes: Mapping[str, Value]
    depends_on: FrozenSet[ResourceRef] = frozenset()
    index: int = 0  # position in declaration order
    source: Optional[str] = None

    def __post_init__(self):
        # Freeze the attribute mapping so parsed declarations stay immutable
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, 'attributes', MappingProxyType(dict(self.attributes)))

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.name)

    def references(self) -> List[RefValue]:
        """All output references found in the attributes."""
        refs = []
        for name in sorted(self.attributes):
            refs.extend(self.attributes[name].references())
        return refs

    @property
    def dependencies(self) -> FrozenSet[ResourceRef]:
        """Explicit ``depends_on`` plus resources referenced by attributes."""
        return self.depends_on | frozenset(ref.target for ref in self.references())

    def canonical_attributes(self) -> Dict[str, Any]:
        """Attributes in the plain form stored in state and used for diffing."""
        return attributes_to_plain(dict(self.attributes))

    def resolve(self, lookup: OutputLookup) -> Dict[str, Any]:
        """Attributes with references replaced by concrete output values."""
        return {name: self.attributes[name].resolve(lookup) for name in sorted(self.attributes)}


@dataclass
class DeclarationSet:
    """Validated declarations in declaration order."""

    declarations: Dict[ResourceRef, ResourceDeclaration] = field(default_factory=dict)
    schemas: Dict[str, KindSchema] = field(default_factory=dict)

    def add(self, declaration: ResourceDeclaration) -> None:
        self.declarations[declaration.ref] = declaration

    def get(self, ref: ResourceRef) -> Optional[ResourceDeclaration]:
        return self.declarations.get(ref)

    def __contains__(self, ref: object) -> bool:
        return ref in self.declarations

    def __iter__(self) -> Iterator[ResourceDeclaration]:
        return iter(sorted(self.declarations.values(), key=lambda d: d.index))

    def __len__(self) -> int:
        return len(self.declarations)

    def refs(self) -> List[ResourceRef]:
        """References in declaration order."""
        return [declaration.ref for declaration in self]
