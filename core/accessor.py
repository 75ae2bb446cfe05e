"""
core/accessor.py -- Descriptor-driven fetch, coercion and field-level access.

This is the only place that mutates persisted entity fields. Every read and
write of an individual field goes through the descriptor table of the entity
(core/descriptors.py) and through the permission evaluator (core/perms.py):

  fetch / fetch_many   SELECT the described columns, coalescing NULLs to the
                       declared defaults and coercing each value into its
                       attribute type.
  set_field            permission check, coercion, no-op detection and a
                       single audited UPDATE.
  set_keyed            the same for entities stored as (key, value) rows
                       (the config table).
  struct_mod           in-memory SET / ADD / REMOVE (slices support add/remove).
  details / tag        introspection helpers for handlers.
  build_menu           one command per visible (or writable) field.
  perm_check           pfget / pfset expression ORed with an optional
                       per-entity `perm_check(ctx, mode, desc)` hook.

Entities may also expose `translate(ctx, text)`; labels and hints pass
through it before they reach a menu. An entity exposing
`validate(desc, value)` gets to reject a coerced value before it is written.

Security:
  [A1] Values of password-like fields (ftype "password" or "image") are
       masked in audit text.

  [A2] Booleans are normalized on both sides before the no-op comparison, so
       "yes", "true" and "1" all equal True and do not produce an UPDATE or
       an audit row.

  All SQL is built with SQLAlchemy Core expressions and bound parameters.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, or_, select, update

from core.db import metadata, parse_iso, to_iso
from core.descriptors import FieldDesc, describe, find_field, flatten
from core.errors import InvalidInput, NotFound, Unauthorized
from core.menu import Menu, MenuEntry
from core.perms import Perm, convert_perms

if TYPE_CHECKING:
    from core.context import RequestContext
    from core.db import Database

SET, ADD, REMOVE = "set", "add", "remove"

TRUTHY = frozenset({"1", "y", "yes", "t", "true", "on", "enabled"})

_ARG_TYPES = {"bool": "#bool", "int": "#int", "string": "#string", "time": "#time"}

_OPS: dict[str, Callable[[Any, Any], Any]] = {
    "=": operator.eq,
    "<>": operator.ne,
    "<": operator.lt,
    ">": operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
    "LIKE": lambda col, val: col.like(val),
    "ILIKE": lambda col, val: col.ilike(val),
}


def is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY


def to_string(value: Any, time_format: str = "%Y-%m-%d %H:%M:%S") -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, datetime):
        return value.strftime(time_format)
    if isinstance(value, (list, tuple, set)):
        return ", ".join(to_string(v, time_format) for v in value)
    return str(value)


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------


def _table(name: str):
    try:
        return metadata.tables[name]
    except KeyError:
        raise InvalidInput(f"Unknown table: {name}") from None


def _column(base, ref: str):
    """Resolve "column" against base, or "table.column" against any table."""
    if "." in ref:
        tname, cname = ref.split(".", 1)
        return _table(tname).c[cname]
    return base.c[ref]


def _select_plan(cls: type, base) -> list[tuple[tuple[str, ...], FieldDesc, Any]]:
    """(attribute path, descriptor, select expression) for every fetched column."""
    plan = []

    def walk(klass: type, path: tuple[str, ...]) -> None:
        for desc in describe(klass):
            if desc.spec.ignore:
                continue
            if desc.kind == "compound":
                walk(desc.nested, path + (desc.name,))
                continue
            if desc.kind == "slice":
                continue
            tbl = _table(desc.spec.table) if desc.spec.table else base
            col = tbl.c[desc.column]
            if desc.spec.coalesce is not None:
                expr = func.coalesce(col, desc.spec.coalesce)
            elif not desc.nullable and desc.kind == "string":
                expr = func.coalesce(col, "")
            elif not desc.nullable and desc.kind == "int":
                expr = func.coalesce(col, 0)
            elif not desc.nullable and desc.kind == "bool":
                expr = func.coalesce(col, False)
            else:
                expr = col
            plan.append((path + (desc.name,), desc, expr.label(f"c{len(plan)}")))

    walk(cls, ())
    return plan


def _from_db(desc: FieldDesc, value: Any) -> Any:
    if value is None:
        return None
    if desc.kind == "time":
        return value if isinstance(value, datetime) else parse_iso(value)
    if desc.kind == "bool":
        return bool(value)
    if desc.kind == "int":
        return int(value)
    if desc.kind == "binary":
        return bytes(value)
    return str(value)


def _to_db(desc: FieldDesc, value: Any) -> Any:
    if desc.kind == "time" and isinstance(value, datetime):
        return to_iso(value)
    return value


def _build(cls: type, values: Mapping[tuple[str, ...], Any], path: tuple[str, ...] = ()) -> Any:
    kwargs: dict[str, Any] = {}
    for desc in describe(cls):
        key = path + (desc.name,)
        if desc.kind == "compound":
            kwargs[desc.name] = _build(desc.nested, values, key)
        elif key in values and values[key] is not None:
            kwargs[desc.name] = values[key]
        elif key in values and desc.nullable:
            kwargs[desc.name] = None
    return cls(**kwargs)


def _select_from(base, joins: Mapping[str, Any] | None):
    frm = base
    for tname, onclause in (joins or {}).items():
        frm = frm.outerjoin(_table(tname), onclause)
    return frm


def _rows_to_objects(cls: type, plan, rows) -> list[Any]:
    out = []
    for row in rows:
        values = {path: _from_db(desc, row[i]) for i, (path, desc, _) in enumerate(plan)}
        out.append(_build(cls, values))
    return out


def fetch(db: Database, cls: type, table: str, where: Mapping[str, Any], joins: Mapping[str, Any] | None = None) -> Any:
    """Fetch exactly one entity; NotFound when no row matches."""
    base = _table(table)
    plan = _select_plan(cls, base)
    stmt = select(*(expr for _, _, expr in plan)).select_from(_select_from(base, joins))
    for ref, value in where.items():
        stmt = stmt.where(_column(base, ref) == value)
    with db.engine.connect() as conn:
        rows = conn.execute(stmt.limit(1)).all()
    if not rows:
        raise NotFound(f"No entry in {table} with that ID")
    return _rows_to_objects(cls, plan, rows)[0]


def fetch_many(
    db: Database,
    cls: type,
    table: str,
    filters: Iterable[tuple[str, str, Any]] = (),
    combine: str = "AND",
    order_by: Iterable[str] = (),
    limit: int = 0,
    offset: int = 0,
    joins: Mapping[str, Any] | None = None,
) -> list[Any]:
    """Fetch entities matching (column, comparator, value) triples."""
    base = _table(table)
    plan = _select_plan(cls, base)
    stmt = select(*(expr for _, _, expr in plan)).select_from(_select_from(base, joins))
    clauses = []
    for ref, op, value in filters:
        fn = _OPS.get(op.upper())
        if fn is None:
            raise InvalidInput(f"Unknown comparator: {op}")
        clauses.append(fn(_column(base, ref), value))
    if clauses:
        stmt = stmt.where(or_(*clauses) if combine.upper() == "OR" else and_(*clauses))
    for ref in order_by:
        desc = ref.startswith("-")
        col = _column(base, ref.lstrip("-"))
        stmt = stmt.order_by(col.desc() if desc else col)
    if limit:
        stmt = stmt.limit(limit)
    if offset:
        stmt = stmt.offset(offset)
    with db.engine.connect() as conn:
        rows = conn.execute(stmt).all()
    return _rows_to_objects(cls, plan, rows)


# ---------------------------------------------------------------------------
# Coercion and in-memory modification
# ---------------------------------------------------------------------------


def coerce(desc: FieldDesc, value: Any, time_format: str = "%Y-%m-%d %H:%M:%S") -> Any:
    """Convert user input into the declared type of `desc`."""
    if desc.kind == "slice":
        raise InvalidInput("Can't 'set' a slice type")
    if value is None or (desc.nullable and value == ""):
        if not desc.nullable:
            raise InvalidInput(f"A value is required for {desc.menu_name}")
        return None
    spec = desc.spec
    if desc.kind == "bool":
        return is_true(value)
    if desc.kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            try:
                value = int(str(value).strip(), 10)
            except ValueError:
                raise InvalidInput(f"Invalid number encountered: '{value}'") from None
        if spec.min is not None and value < spec.min:
            raise InvalidInput(f"Value for {desc.menu_name} must be at least {spec.min}")
        if spec.max is not None and value > spec.max:
            raise InvalidInput(f"Value for {desc.menu_name} must be at most {spec.max}")
        return value
    if desc.kind == "time":
        if isinstance(value, datetime):
            return value
        try:
            return datetime.strptime(str(value).strip(), time_format).replace(tzinfo=timezone.utc)
        except ValueError:
            raise InvalidInput(f"Invalid time encountered: '{value}'") from None
    if desc.kind == "binary":
        return value if isinstance(value, bytes) else str(value).encode("utf-8")
    value = str(value)
    if spec.min is not None and len(value) < spec.min:
        raise InvalidInput(f"Value for {desc.menu_name} is too short (minimum {spec.min})")
    if spec.max is not None and len(value) > spec.max:
        raise InvalidInput(f"Value for {desc.menu_name} is too long (maximum {spec.max})")
    return value


def _normalize(desc: FieldDesc, value: Any) -> Any:
    if value is None:
        return None
    if desc.kind == "bool":
        return is_true(value)
    if desc.kind == "time" and isinstance(value, datetime):
        return to_iso(value)
    return value


def _lookup(obj: Any, name: str) -> tuple[Any, FieldDesc]:
    found = find_field(obj, name)
    if found is None:
        raise InvalidInput(f"Unknown Field: {name}")
    owner, desc = found
    if desc.spec.ignore:
        raise InvalidInput("Field is ignored")
    return owner, desc


def struct_mod(op: str, obj: Any, name: str, value: Any, time_format: str = "%Y-%m-%d %H:%M:%S") -> None:
    """Modify a field in memory: SET scalars, ADD to / REMOVE from slices."""
    owner, desc = _lookup(obj, name)
    if op == SET:
        setattr(owner, desc.name, coerce(desc, value, time_format))
        return
    if desc.kind != "slice":
        raise InvalidInput("Can't add to non-slice type" if op == ADD else "Can't remove from non-slice type")
    items = getattr(owner, desc.name)
    if op == ADD:
        items.append(value)
    elif op == REMOVE:
        if value not in items:
            raise InvalidInput("Item not found, thus cannot remove")
        items.remove(value)
    else:
        raise InvalidInput(f"Unknown operation: {op}")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


def perm_check(ctx: RequestContext, mode: str, obj: Any, desc: FieldDesc) -> tuple[bool, bool]:
    """Return (visible, editable) for one field.

    mode is "read" or "edit". An entity hook that allows wins; otherwise the
    pfset (edit) or pfget (read) expression decides. A denied edit falls back
    to read, leaving the field visible but immutable.
    """
    allow_edit = mode == "edit"

    hook = getattr(obj, "perm_check", None)
    if hook is not None:
        ok, hook_edit = hook(ctx, mode, desc)
        if not ok and allow_edit:
            ok, hook_edit = hook(ctx, "read", desc)
        if ok:
            return True, hook_edit

    expr = desc.spec.pfset if allow_edit else desc.spec.pfget
    decision = ctx.check_perms(f"FieldPerm({desc.name}/{mode})", convert_perms(expr))
    if not decision and allow_edit:
        allow_edit = False
        if not desc.spec.pfget:
            return False, False
        decision = ctx.check_perms(f"FieldPerm({desc.name}/read)", convert_perms(desc.spec.pfget))
    return bool(decision), allow_edit and bool(decision)


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldDetail:
    kind: str
    name: str
    value: str


def details(ctx: RequestContext, obj: Any, name: str, mode: str | None = None) -> FieldDetail:
    """Describe one field; with `mode` the caller must also pass perm_check."""
    owner, desc = _lookup(obj, name)
    if mode is not None:
        ok, editable = perm_check(ctx, mode, owner, desc)
        if not ok or (mode == "edit" and not editable):
            raise Unauthorized(f"Not allowed to access {desc.menu_name}")
    value = to_string(getattr(owner, desc.name), ctx.services.settings.time_format)
    return FieldDetail(desc.kind, desc.menu_name, value)


def tag(cls: type, name: str, key: str) -> Any:
    for desc in describe(cls):
        if name.lower() in (desc.name.lower(), desc.menu_name):
            return getattr(desc.spec, key)
    raise InvalidInput(f"Unknown Field: {name}")


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------


def set_field(ctx: RequestContext, obj: Any, table: str, key_column: str, key: Any, name: str, value: Any) -> bool:
    """Persist one field. Returns False when the value was already current [A2]."""
    owner, desc = _lookup(obj, name)
    ok, editable = perm_check(ctx, "edit", owner, desc)
    if not ok:
        raise Unauthorized(f"Not allowed to access {desc.menu_name}")
    if not editable:
        raise Unauthorized(f"{desc.menu_name} is read-only")

    fmt = ctx.services.settings.time_format
    new = coerce(desc, value, fmt)
    old = getattr(owner, desc.name)
    if _normalize(desc, old) == _normalize(desc, new):
        return False

    tbl = _table(desc.spec.table or table)
    if desc.secret:
        shown_old = shown_new = "*****"
    else:
        shown_old, shown_new = to_string(old, fmt), to_string(new, fmt)
    validate = getattr(owner, "validate", None)
    if validate is not None:
        validate(desc, new)
    stmt = update(tbl).where(tbl.c[key_column] == key).values({desc.column: _to_db(desc, new)})
    rows = ctx.services.db.exec_audit(
        ctx,
        f"Update {tbl.name}: {key_column} = {key} property {desc.menu_name} from '{shown_old}' to '{shown_new}'",
        stmt,
    )
    if rows == 0:
        raise NotFound(f"No entry in {tbl.name} with that ID")
    setattr(owner, desc.name, new)
    return True


def serialize(desc: FieldDesc, value: Any) -> str:
    """Text form used by key/value tables."""
    if value is None:
        return ""
    if desc.kind == "bool":
        return "true" if value else "false"
    if desc.kind == "time":
        return to_iso(value)
    return str(value)


def set_keyed(ctx: RequestContext, obj: Any, table: str, name: str, value: Any) -> bool:
    """Persist one field of an entity stored as (key, value) rows.

    Same checks as set_field; the row key is the field's column name and
    every value is stored as text.
    """
    owner, desc = _lookup(obj, name)
    ok, editable = perm_check(ctx, "edit", owner, desc)
    if not ok:
        raise Unauthorized(f"Not allowed to access {desc.menu_name}")
    if not editable:
        raise Unauthorized(f"{desc.menu_name} is read-only")

    new = coerce(desc, value, ctx.services.settings.time_format)
    if _normalize(desc, getattr(owner, desc.name)) == _normalize(desc, new):
        return False

    validate = getattr(owner, "validate", None)
    if validate is not None:
        validate(desc, new)
    text = serialize(desc, new)
    shown = "*****" if desc.secret else text
    tbl = _table(table)
    stmt = update(tbl).where(tbl.c.key == desc.column).values(value=text)
    rows = ctx.services.db.exec_audit(ctx, f"System Setting {desc.column} set to {shown}", stmt)
    if rows == 0:
        raise NotFound(f"No entry in {table} with that ID")
    setattr(owner, desc.name, new)
    return True


# ---------------------------------------------------------------------------
# Menus
# ---------------------------------------------------------------------------


def struct_get(ctx: RequestContext, args: list[str]) -> None:
    """Menu handler printing the field named by the last command word."""
    obj = ctx.sel_obj
    if obj is None:
        raise InvalidInput("No object selected")
    found = find_field(obj, ctx.last_part)
    if found is None or found[1].spec.ignore:
        raise NotFound("Unknown property")
    owner, desc = found
    ctx.outln(to_string(getattr(owner, desc.name), ctx.services.settings.time_format))


def build_menu(
    ctx: RequestContext,
    subjects: list[str],
    obj: Any,
    handler: Callable[[RequestContext, list[str]], None] | None = None,
    only_slices: bool = False,
) -> Menu:
    """One entry per field the caller may read (or, with a handler, edit).

    `subjects` are the leading argument descriptors (e.g. ["username"]);
    edit entries take one more argument, the new value.
    """
    ctx.select_object(obj)
    is_edit = handler is not None
    if handler is None:
        handler = struct_get
    nargs = len(subjects) + (1 if is_edit else 0)
    mode = "edit" if is_edit else "read"

    menu = Menu()
    for owner, desc in flatten(obj):
        if (desc.kind == "slice") != only_slices:
            continue
        ok, editable = perm_check(ctx, mode, owner, desc)
        if not ok or (is_edit and not editable):
            continue

        translate = getattr(owner, "translate", None) or getattr(obj, "translate", None)
        label = desc.spec.label or desc.name
        hint = desc.spec.hint
        if translate is not None:
            label = translate(ctx, label) if desc.spec.label else label
            hint = translate(ctx, hint) if hint else hint
        text = f"{label} - {hint}" if hint else label

        args = list(subjects)
        if is_edit:
            args.append(desc.menu_name + _ARG_TYPES.get(desc.kind, ""))
        # Access for this context was decided by perm_check above.
        menu.add(MenuEntry(desc.menu_name, handler, nargs, nargs, args, Perm.NONE, text))
    return menu
