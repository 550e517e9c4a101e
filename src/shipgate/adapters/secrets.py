"""Credential resolution for adapters.

Stage parameters never carry credential values, only opaque references such
as ``env:SONAR_TOKEN``. A ``SecretProvider`` turns a reference into the value
at the moment an adapter needs it.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Final, Protocol, runtime_checkable

from shipgate.domain.errors import SecretResolutionError

ENV_SCHEME: Final[str] = "env"


@runtime_checkable
class SecretProvider(Protocol):
    def resolve(self, reference: str) -> str: ...


def is_secret_reference(value: object) -> bool:
    if not isinstance(value, str):
        return False
    scheme, separator, name = value.partition(":")
    return bool(separator) and scheme == ENV_SCHEME and bool(name.strip())


class EnvSecretProvider:
    """Resolves ``env:NAME`` from the process environment (or an injected mapping)."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ

    def resolve(self, reference: str) -> str:
        scheme, separator, name = reference.partition(":")
        if not separator or scheme != ENV_SCHEME or not name.strip():
            raise SecretResolutionError(reference, "expected a reference of the form 'env:NAME'")
        environ = self._environ if self._environ is not None else os.environ
        value = environ.get(name.strip())
        if value is None or not value:
            raise SecretResolutionError(reference, f"environment variable {name.strip()} is not set")
        return value


class StaticSecretProvider:
    """Fixed reference-to-value table for tests and embedding."""

    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = dict(values)

    def resolve(self, reference: str) -> str:
        value = self._values.get(reference)
        if value is None:
            raise SecretResolutionError(reference, "no such secret")
        return value

    def values(self) -> tuple[str, ...]:
        return tuple(self._values.values())


__all__ = [
    "ENV_SCHEME",
    "EnvSecretProvider",
    "SecretProvider",
    "StaticSecretProvider",
    "is_secret_reference",
]
