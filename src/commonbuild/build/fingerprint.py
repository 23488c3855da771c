"""Manifest digests — detect and explain changes to a package's build section."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field

MANIFEST_SCHEME = "commonbuild:manifest:v1"


def hash_field_value(value) -> str:
    """Stable 16-char hash of one manifest value.

    Lists keep their order since flag order matters to the compiler.
    Strings ignore trailing whitespace and line-ending style.
    """
    if value is None:
        raw = ""
    elif isinstance(value, str):
        raw = value.replace("\r\n", "\n").rstrip()
    else:
        raw = json.dumps(value, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def combine_field_hashes(fields: dict[str, str]) -> str:
    joined = ";".join(f"{name}:{fields[name]}" for name in sorted(fields))
    return hashlib.sha256(f"{MANIFEST_SCHEME};{joined}".encode()).hexdigest()


@dataclass(frozen=True)
class ManifestDigest:
    """Hash of a ``CommonML`` section, kept per field so a change can be named.

    ``scheme`` versions the hashing rules; digests from another scheme never
    match.
    """

    digest: str
    fields: dict[str, str] = field(default_factory=dict)
    scheme: str = MANIFEST_SCHEME

    def matches(self, other: ManifestDigest | None) -> bool:
        return other is not None and (self.scheme, self.digest) == (other.scheme, other.digest)

    def explain_diff(self, previous: ManifestDigest | None) -> list[str]:
        """Reasons this digest differs from ``previous``, one per changed field."""
        if previous is None:
            return ["no stored manifest digest"]
        if previous.scheme != self.scheme:
            return [f"manifest digest scheme changed ({previous.scheme} -> {self.scheme})"]
        names = sorted(
            name
            for name in set(self.fields) | set(previous.fields)
            if self.fields.get(name) != previous.fields.get(name)
        )
        return [f"manifest {name} changed" for name in names] or ["manifest changed"]

    def to_dict(self) -> dict:
        return {"scheme": self.scheme, "digest": self.digest, "fields": dict(self.fields)}

    @classmethod
    def from_dict(cls, data: dict | None) -> ManifestDigest | None:
        if not data or "digest" not in data:
            return None
        return cls(
            digest=data["digest"],
            fields=dict(data.get("fields") or {}),
            scheme=data.get("scheme", MANIFEST_SCHEME),
        )


def digest_manifest(section: dict | None) -> ManifestDigest:
    """Digest a package's build section (``CommonML`` in package.json)."""
    fields = {name: hash_field_value(value) for name, value in (section or {}).items()}
    return ManifestDigest(digest=combine_field_hashes(fields), fields=fields)
