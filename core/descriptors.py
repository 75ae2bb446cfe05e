"""
core/descriptors.py -- Per-entity field descriptor tables.

Entities are plain dataclasses. Every persisted field declares its metadata
with pf_field(), which stores a FieldSpec in the dataclass field metadata:

    @dataclass
    class Group:
        name: str = pf_field("", column="ident", label="Group Name", pfset="nobody", pfget="group_member")

describe(cls) walks the dataclass once, resolves each annotation into a
semantic kind, and returns an immutable tuple of FieldDesc. The result is
cached per class, so the reflective accessor (core/accessor.py) walks a
precomputed table instead of inspecting types on every request.

Semantic kinds:
  string, bool, int, time, binary  -- scalar columns
  slice                            -- list[...] fields (in-memory add/remove only)
  compound                         -- a nested dataclass whose fields are flattened
A `X | None` annotation marks the field nullable.

Layer rule: core/ is the kernel. No project imports.
"""

from __future__ import annotations

import dataclasses
import types
import typing
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

_MISSING = dataclasses.MISSING


@dataclass(frozen=True)
class FieldSpec:
    column: str = ""  # SQL column; defaults to the attribute name
    table: str = ""  # table holding the column when it is not the entity's own
    coalesce: Any = None  # value substituted for NULL on fetch
    pfget: str = ""  # read permission expression (empty = anyone)
    pfset: str = ""  # write permission expression (empty = anyone)
    label: str = ""
    hint: str = ""
    ignore: bool = False  # not persisted, not exposed
    ftype: str = ""  # presentation type (ident, descr, email, password, ...)
    min: int | None = None  # minimum length (strings) or value (ints)
    max: int | None = None
    skipfailperm: bool = False  # silently skip on permission failure instead of raising


@dataclass(frozen=True)
class FieldDesc:
    name: str
    kind: str
    nullable: bool
    spec: FieldSpec
    nested: type | None = None  # dataclass for compound fields

    @property
    def column(self) -> str:
        return self.spec.column or self.name

    @property
    def menu_name(self) -> str:
        return (self.spec.column or self.name).lower()

    @property
    def secret(self) -> bool:
        return self.spec.ftype in ("password", "image")


def pf_field(default: Any = _MISSING, *, default_factory: Any = _MISSING, **spec: Any) -> Any:
    """dataclasses.field() carrying a FieldSpec."""
    kwargs: dict[str, Any] = {"metadata": {"pf": FieldSpec(**spec)}}
    if default is not _MISSING:
        kwargs["default"] = default
    if default_factory is not _MISSING:
        kwargs["default_factory"] = default_factory
    return dataclasses.field(**kwargs)


_SCALARS = {str: "string", bool: "bool", int: "int", datetime: "time", bytes: "binary"}


def _resolve(hint: Any) -> tuple[str, bool, type | None]:
    nullable = False
    origin = typing.get_origin(hint)
    if origin in (typing.Union, types.UnionType):
        members = [a for a in typing.get_args(hint) if a is not type(None)]
        nullable = len(members) != len(typing.get_args(hint))
        if len(members) != 1:
            raise TypeError(f"Unsupported union annotation: {hint!r}")
        hint = members[0]
        origin = typing.get_origin(hint)
    if origin in (list, tuple, set):
        return "slice", nullable, None
    if hint in _SCALARS:
        return _SCALARS[hint], nullable, None
    if dataclasses.is_dataclass(hint):
        return "compound", nullable, hint
    raise TypeError(f"Unsupported field annotation: {hint!r}")


@lru_cache(maxsize=None)
def describe(cls: type) -> tuple[FieldDesc, ...]:
    """Return the descriptor table for an entity dataclass.

    Fields without pf metadata are skipped, except nested dataclasses which
    are always walked.
    """
    hints = typing.get_type_hints(cls)
    table = []
    for f in dataclasses.fields(cls):
        spec = f.metadata.get("pf")
        hint = hints[f.name]
        if spec is None and not dataclasses.is_dataclass(hint):
            continue
        kind, nullable, nested = _resolve(hint)
        if spec is None:
            spec = FieldSpec()
        table.append(FieldDesc(f.name, kind, nullable, spec, nested))
    return tuple(table)


def flatten(obj: Any) -> list[tuple[Any, FieldDesc]]:
    """(owner, desc) pairs for every scalar or slice field, compounds expanded."""
    out: list[tuple[Any, FieldDesc]] = []
    for desc in describe(type(obj)):
        if desc.spec.ignore:
            continue
        if desc.kind == "compound":
            inner = getattr(obj, desc.name)
            if inner is not None:
                out.extend(flatten(inner))
            continue
        out.append((obj, desc))
    return out


def find_field(obj: Any, name: str) -> tuple[Any, FieldDesc] | None:
    """Locate a field by menu name, column, or attribute name (case-insensitive)."""
    wanted = name.lower()
    for desc in describe(type(obj)):
        if desc.kind == "compound":
            inner = getattr(obj, desc.name)
            found = find_field(inner, name) if inner is not None else None
            if found is not None:
                return found
            continue
        if wanted in (desc.menu_name, desc.name.lower()):
            return obj, desc
    return None
