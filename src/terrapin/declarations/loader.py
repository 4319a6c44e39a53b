"""YAML declaration loader.

A declaration file holds a top-level ``resources`` list::

    resources:
      - kind: network
        name: main
        attributes:
          cidr: 10.0.0.0/16
      - kind: subnet
        name: web
        depends_on: [network.main]
        attributes:
          network_id: ${network.main.id}
          cidr: 10.0.1.0/24

Directories are expanded to their ``*.yaml``/``*.yml`` files sorted by name.
Declaration order is file order, then list order within a file.
"""

import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from terrapin.declarations.models import DeclarationSet, ResourceDeclaration
from terrapin.declarations.ref import KIND_PATTERN, NAME_PATTERN, ResourceRef
from terrapin.declarations.schema import BUILTIN_SCHEMAS, KindSchema
from terrapin.declarations.values import InvalidValue, from_plain
from terrapin.utils.errors import (
    DeclarationReferenceError,
    DeclarationTypeError,
    ErrorContext,
    ParseError,
)
from terrapin.utils.logging import get_logger

logger = get_logger(__name__)

DECLARATION_SUFFIXES = ('.yaml', '.yml')
ALLOWED_KEYS = {'kind', 'name', 'attributes', 'depends_on'}

_KIND_RE = re.compile(rf'^{KIND_PATTERN}$')
_NAME_RE = re.compile(rf'^{NAME_PATTERN}$')

PathLike = Union[str, Path]


class DeclarationLoader:
    """Parses declaration files into a validated DeclarationSet."""

    def __init__(self, schemas: Optional[Dict[str, KindSchema]] = None):
        """Initialize loader.

        Args:
            schemas: Kind schemas to validate against (defaults to the built-in kinds)
        """
        self.schemas = dict(schemas if schemas is not None else BUILTIN_SCHEMAS)
        self.logger = get_logger(__name__)

    def load(self, paths: Iterable[PathLike]) -> DeclarationSet:
        """Load and validate declarations from files or directories.

        Args:
            paths: Declaration files and/or directories

        Returns:
            Validated DeclarationSet

        Raises:
            ParseError: Malformed YAML or declaration records
            DeclarationTypeError: Attribute value does not match the kind's schema
            DeclarationReferenceError: Reference to an undeclared resource or output
        """
        files = self._expand(paths)
        declarations = DeclarationSet(schemas=self.schemas)

        for file_path in files:
            try:
                text = file_path.read_text()
            except OSError as e:
                raise ParseError(
                    f"Cannot read declaration file: {e}",
                    context=ErrorContext(source=str(file_path)),
                    cause=e
                )
            self._parse_document(text, str(file_path), declarations)

        self._validate_references(declarations)

        self.logger.info(f"Loaded {len(declarations)} declarations from {len(files)} file(s)")
        return declarations

    def loads(self, text: str, source: str = '<string>') -> DeclarationSet:
        """Load and validate declarations from a YAML string."""
        declarations = DeclarationSet(schemas=self.schemas)
        self._parse_document(text, source, declarations)
        self._validate_references(declarations)
        return declarations

    def _expand(self, paths: Iterable[PathLike]) -> List[Path]:
        files: List[Path] = []
        for raw_path in paths:
            path = Path(raw_path)
            if path.is_dir():
                files.extend(
                    sorted(p for p in path.iterdir() if p.is_file() and p.suffix in DECLARATION_SUFFIXES)
                )
            elif path.exists():
                files.append(path)
            else:
                raise ParseError(
                    f"Declaration path not found: {path}",
                    context=ErrorContext(source=str(path))
                )
        return files

    def _parse_document(self, text: str, source: str, declarations: DeclarationSet) -> None:
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ParseError(
                f"Failed to parse YAML: {e}",
                context=ErrorContext(source=source),
                cause=e
            )

        if document is None:
            return
        if not isinstance(document, dict) or set(document) - {'resources'}:
            raise ParseError(
                "Declaration file must be a mapping with a single 'resources' key",
                context=ErrorContext(source=source)
            )

        records = document.get('resources') or []
        if not isinstance(records, list):
            raise ParseError("'resources' must be a list", context=ErrorContext(source=source))

        for position, record in enumerate(records):
            declaration = self._parse_record(record, position, source, len(declarations))
            if declaration.ref in declarations:
                raise ParseError(
                    f"Duplicate declaration: {declaration.ref}",
                    context=ErrorContext(resource_id=str(declaration.ref), source=source)
                )
            declarations.add(declaration)

    def _parse_record(self, record: Any, position: int, source: str, index: int) -> ResourceDeclaration:
        where = f"{source}: resources[{position}]"

        if not isinstance(record, dict):
            raise ParseError(f"{where}: declaration must be a mapping", context=ErrorContext(source=source))

        unknown = set(record) - ALLOWED_KEYS
        if unknown:
            raise ParseError(
                f"{where}: unknown key(s): {', '.join(sorted(map(str, unknown)))}",
                context=ErrorContext(source=source)
            )

        kind = record.get('kind')
        name = record.get('name')
        if not isinstance(kind, str) or not _KIND_RE.match(kind):
            raise ParseError(f"{where}: missing or invalid 'kind'", context=ErrorContext(source=source))
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ParseError(f"{where}: missing or invalid 'name'", context=ErrorContext(source=source))

        ref = ResourceRef(kind, name)
        context = ErrorContext(resource_id=str(ref), kind=kind, source=source)

        schema = self.schemas.get(kind)
        if schema is None:
            raise ParseError(
                f"Unknown resource kind '{kind}'",
                context=context,
                suggestions=[f"Known kinds: {', '.join(sorted(self.schemas))}"]
            )

        raw_attributes = record.get('attributes') or {}
        if not isinstance(raw_attributes, dict):
            raise ParseError("'attributes' must be a mapping", context=context)

        attributes = {}
        for attr_name, raw_value in raw_attributes.items():
            if not isinstance(attr_name, str):
                raise ParseError(f"Attribute names must be strings, got {attr_name!r}", context=context)
            try:
                attributes[attr_name] = from_plain(raw_value)
            except InvalidValue as e:
                raise ParseError(f"Attribute '{attr_name}': {e}", context=context, cause=e)

        depends_on = self._parse_depends_on(record.get('depends_on'), context)

        self._validate_schema(schema, attributes, context)
        for attr_name, default in schema.defaults().items():
            attributes.setdefault(attr_name, default)

        return ResourceDeclaration(
            kind=kind,
            name=name,
            attributes=attributes,
            depends_on=depends_on,
            index=index,
            source=source
        )

    def _parse_depends_on(self, raw: Any, context: ErrorContext) -> frozenset:
        if raw is None:
            return frozenset()
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            raise ParseError("'depends_on' must be a list of kind.name references", context=context)

        refs = set()
        for entry in raw:
            try:
                refs.add(ResourceRef.parse(entry))
            except ValueError as e:
                raise ParseError(f"depends_on: {e}", context=context, cause=e)
        return frozenset(refs)

    def _validate_schema(self, schema: KindSchema, attributes: Dict, context: ErrorContext) -> None:
        for attr_name in sorted(attributes):
            spec = schema.attributes.get(attr_name)
            if spec is None:
                raise DeclarationTypeError(
                    f"Unknown attribute '{attr_name}' for kind '{schema.kind}'",
                    context=context,
                    suggestions=[f"Allowed attributes: {', '.join(sorted(schema.attributes))}"]
                )
            mismatch = spec.check(attributes[attr_name])
            if mismatch:
                raise DeclarationTypeError(f"Attribute '{attr_name}': {mismatch}", context=context)

        for attr_name, spec in schema.attributes.items():
            if spec.required and attr_name not in attributes:
                raise DeclarationTypeError(f"Missing required attribute '{attr_name}'", context=context)

    def _validate_references(self, declarations: DeclarationSet) -> None:
        for declaration in declarations:
            context = ErrorContext(
                resource_id=str(declaration.ref),
                kind=declaration.kind,
                source=declaration.source
            )

            for target in sorted(declaration.depends_on):
                if target not in declarations:
                    raise DeclarationReferenceError(
                        f"depends_on refers to undeclared resource '{target}'",
                        context=context
                    )

            for reference in declaration.references():
                target = declarations.get(reference.target)
                if target is None:
                    raise DeclarationReferenceError(
                        f"Reference {reference.to_plain()} names undeclared resource '{reference.target}'",
                        context=context
                    )
                schema = declarations.schemas[target.kind]
                if not schema.has_output(reference.attribute):
                    raise DeclarationReferenceError(
                        f"Reference {reference.to_plain()}: kind '{target.kind}' has no output "
                        f"'{reference.attribute}'",
                        context=context,
                        suggestions=[f"Available outputs: {', '.join(schema.outputs)}"]
                    )


def load_declarations(
    paths: Iterable[PathLike],
    schemas: Optional[Dict[str, KindSchema]] = None
) -> DeclarationSet:
    """Convenience wrapper around DeclarationLoader.load."""
    return DeclarationLoader(schemas).load(paths)
