"""Stable resource references."""

import re
from dataclasses import dataclass

KIND_PATTERN = r'[a-z][a-z0-9_]*'
NAME_PATTERN = r'[A-Za-z0-9][A-Za-z0-9_-]*'

_REF_RE = re.compile(rf'^({KIND_PATTERN})\.({NAME_PATTERN})$')


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Identifies a resource by ``(kind, name)``."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @property
    def key(self) -> str:
        """Key used in the state document."""
        return str(self)

    @classmethod
    def parse(cls, text: str) -> "ResourceRef":
        """Parse ``kind.name``.

        Raises:
            ValueError: If the text is not a valid reference
        """
        match = _REF_RE.match(text.strip()) if isinstance(text, str) else None
        if not match:
            raise ValueError(f"Invalid resource reference: {text!r} (expected kind.name)")
        return cls(kind=match.group(1), name=match.group(2))
