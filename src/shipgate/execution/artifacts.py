"""
shipgate — per-run artifact store

Purpose
- Hold values produced by stages for consumption by later stages: the
  computed version string, build output, the SBOM document, reports.

Normative behavior
- One store per run; keys are ``(stage_name, artifact_type)``.
- Each key is written at most once; a second write raises
  ``ArtifactConflictError`` and the first value stays in place.
- Reads of missing keys raise ``ArtifactNotFoundError``.
- ``manifest()`` describes every artifact by size and SHA-256 of its canonical
  bytes, in ``(stage_name, artifact_type)`` order. Content never leaves the
  store through the manifest.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Final

from shipgate.domain.errors import ArtifactConflictError, ArtifactNotFoundError
from shipgate.domain.models import ArtifactDescriptor
from shipgate.utils.hashing import canonical_json, sha256_bytes

ArtifactValue = str | bytes | Mapping[str, object] | Sequence[object]

MEDIA_TYPE_TEXT: Final[str] = "text/plain"
MEDIA_TYPE_JSON: Final[str] = "application/json"
MEDIA_TYPE_BINARY: Final[str] = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class _StoredArtifact:
    descriptor: ArtifactDescriptor
    kind: str
    payload: str | bytes


class ArtifactStore:
    """Write-once key/value store scoped to a single run."""

    def __init__(self, run_id: str | None = None) -> None:
        self._run_id = run_id
        self._entries: dict[tuple[str, str], _StoredArtifact] = {}

    @property
    def run_id(self) -> str | None:
        return self._run_id

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, stage_name: str, artifact_type: str) -> bool:
        return (stage_name, artifact_type) in self._entries

    def write(
        self,
        stage_name: str,
        artifact_type: str,
        value: ArtifactValue,
        media_type: str | None = None,
    ) -> ArtifactDescriptor:
        return self.insert(self.prepare(stage_name, artifact_type, value, media_type))

    def prepare(
        self,
        stage_name: str,
        artifact_type: str,
        value: ArtifactValue,
        media_type: str | None = None,
    ) -> _StoredArtifact:
        """Encode and describe ``value`` without storing it."""
        key = (_require_name(stage_name, "stage_name"), _require_name(artifact_type, "artifact_type"))
        kind, payload, raw = _encode(value)
        descriptor = ArtifactDescriptor(
            stage_name=key[0],
            artifact_type=key[1],
            media_type=media_type or _DEFAULT_MEDIA_TYPES[kind],
            size_bytes=len(raw),
            sha256=sha256_bytes(raw),
            uri=self._uri_for(*key),
        )
        return _StoredArtifact(descriptor=descriptor, kind=kind, payload=payload)

    def insert(self, entry: _StoredArtifact) -> ArtifactDescriptor:
        key = (entry.descriptor.stage_name, entry.descriptor.artifact_type)
        if key in self._entries:
            raise ArtifactConflictError(*key)
        self._entries[key] = entry
        return entry.descriptor

    def read(self, stage_name: str, artifact_type: str) -> ArtifactValue:
        entry = self._entries.get((stage_name, artifact_type))
        if entry is None:
            raise ArtifactNotFoundError(stage_name, artifact_type)
        return _decode(entry)

    def descriptor(self, stage_name: str, artifact_type: str) -> ArtifactDescriptor:
        entry = self._entries.get((stage_name, artifact_type))
        if entry is None:
            raise ArtifactNotFoundError(stage_name, artifact_type)
        return entry.descriptor

    def manifest(self) -> tuple[ArtifactDescriptor, ...]:
        return tuple(self._entries[key].descriptor for key in sorted(self._entries))

    def view(self, stage_name: str, dependencies: Iterable[str] = ()) -> ArtifactView:
        return ArtifactView(self, stage_name, tuple(dependencies))

    def _uri_for(self, stage_name: str, artifact_type: str) -> str:
        prefix = f"{self._run_id}/" if self._run_id else ""
        return f"artifact://{prefix}{stage_name}/{artifact_type}"


class ArtifactView:
    """Stage-scoped handle for one attempt.

    Writes land under the owning stage but stay pending until ``commit()``; an
    attempt that raises is ``discard()``-ed, so a retried stage starts clean.
    Lookups read committed artifacts of any stage plus this view's pending ones.
    """

    def __init__(self, store: ArtifactStore, stage_name: str, dependencies: Sequence[str]) -> None:
        self._store = store
        self._stage_name = stage_name
        self._dependencies = tuple(dependencies)
        self._pending: dict[str, _StoredArtifact] = {}

    @property
    def stage_name(self) -> str:
        return self._stage_name

    @property
    def dependencies(self) -> tuple[str, ...]:
        return self._dependencies

    @property
    def pending_types(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def publish(
        self,
        artifact_type: str,
        value: ArtifactValue,
        media_type: str | None = None,
    ) -> ArtifactDescriptor:
        if artifact_type in self._pending or self._store.contains(self._stage_name, artifact_type):
            raise ArtifactConflictError(self._stage_name, artifact_type)
        entry = self._store.prepare(self._stage_name, artifact_type, value, media_type)
        self._pending[entry.descriptor.artifact_type] = entry
        return entry.descriptor

    def commit(self) -> tuple[ArtifactDescriptor, ...]:
        pending, self._pending = self._pending, {}
        return tuple(self._store.insert(entry) for entry in pending.values())

    def discard(self) -> None:
        self._pending.clear()

    def get(self, stage_name: str, artifact_type: str) -> ArtifactValue:
        if stage_name == self._stage_name and artifact_type in self._pending:
            return _decode(self._pending[artifact_type])
        return self._store.read(stage_name, artifact_type)

    def locate(self, artifact_type: str) -> str | None:
        """Name of the first declared dependency that published ``artifact_type``."""
        for dependency in self._dependencies:
            if self._store.contains(dependency, artifact_type):
                return dependency
        return None

    def find(self, artifact_type: str) -> ArtifactValue:
        owner = self.locate(artifact_type)
        if owner is None:
            searched = ", ".join(self._dependencies) or "<no dependencies>"
            raise ArtifactNotFoundError(searched, artifact_type)
        return self._store.read(owner, artifact_type)


_DEFAULT_MEDIA_TYPES: Final[Mapping[str, str]] = {
    "text": MEDIA_TYPE_TEXT,
    "bytes": MEDIA_TYPE_BINARY,
    "json": MEDIA_TYPE_JSON,
}


def _encode(value: object) -> tuple[str, str | bytes, bytes]:
    if isinstance(value, str):
        return "text", value, value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        payload = bytes(value)
        return "bytes", payload, payload
    if isinstance(value, (Mapping, list, tuple)):
        text = canonical_json(value)
        return "json", text, text.encode("utf-8")
    raise TypeError(
        f"artifact values must be str, bytes or JSON-compatible containers, got {type(value).__name__}"
    )


def _decode(entry: _StoredArtifact) -> ArtifactValue:
    if entry.kind == "json":
        # Fresh decode so callers cannot mutate the stored value.
        return json.loads(entry.payload)
    return entry.payload


def _require_name(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string")
    return value.strip()


__all__ = [
    "MEDIA_TYPE_BINARY",
    "MEDIA_TYPE_JSON",
    "MEDIA_TYPE_TEXT",
    "ArtifactStore",
    "ArtifactValue",
    "ArtifactView",
]
