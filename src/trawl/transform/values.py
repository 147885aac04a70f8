"""Tagged-variant parsing of untyped API payload values.

Raw JSON values are classified once, at the boundary, into one variant per
recognised shape. Resolution then dispatches on the variant instead of
probing arbitrary dict keys. Unrecognised shapes fall through to ``Opaque``.

Shapes recognised (Jira / Zulip vocabulary):
  Reference    nested issue   {"key": ..., "fields": {...}}
  Link         issue link     {"type": {...}, "outwardIssue" | "inwardIssue": {...}}
  Person       user object    {"displayName": ..., "name" | "emailAddress": ...}
  Comment      comment        {"author": {...}, "body": ...}
  Container    page wrapper   {"comments": [...], "total": ...}
  Enumeration  option/status  {"value": ...} or {"name": ...}
  FlatObject   dict of scalars
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

_CONTAINER_KEYS = ("comments", "worklogs", "values")
_SCALAR_TYPES = (str, int, float, bool)


@dataclass(frozen=True)
class Absent:
    pass


@dataclass(frozen=True)
class Scalar:
    value: str | int | float | bool


@dataclass(frozen=True)
class Sequence:
    items: tuple["RawValue", ...]


@dataclass(frozen=True)
class Reference:
    key: str
    summary: Any
    status: Any
    type: Any


@dataclass(frozen=True)
class Link:
    relation: str
    target: Reference


@dataclass(frozen=True)
class Person:
    display_name: Any
    handle: Any


@dataclass(frozen=True)
class Comment:
    author: Person | None
    body: Any
    created: Any


@dataclass(frozen=True)
class Container:
    items: Sequence


@dataclass(frozen=True)
class Enumeration:
    value: Any


@dataclass(frozen=True)
class FlatObject:
    items: tuple[tuple[str, "RawValue"], ...]


@dataclass(frozen=True)
class Opaque:
    value: Any


RawValue = Union[
    Absent, Scalar, Sequence, Reference, Link, Person, Comment, Container,
    Enumeration, FlatObject, Opaque,
]


def parse(raw: Any, excluded: frozenset[str] = frozenset()) -> RawValue:
    """Classify *raw* into a variant. Keys in *excluded* are dropped from every mapping first."""
    if raw is None or raw == "":
        return Absent()
    if isinstance(raw, _SCALAR_TYPES):
        return Scalar(raw)
    if isinstance(raw, (list, tuple)):
        return Sequence(tuple(parse(item, excluded) for item in raw))
    if isinstance(raw, Mapping):
        obj = {k: v for k, v in raw.items() if k not in excluded}
        return _parse_mapping(obj, excluded)
    return Opaque(raw)


def _parse_mapping(obj: dict[str, Any], excluded: frozenset[str]) -> RawValue:
    if isinstance(obj.get("key"), str) and isinstance(obj.get("fields"), Mapping):
        return _reference(obj)
    if "outwardIssue" in obj or "inwardIssue" in obj:
        return _link(obj)
    if "displayName" in obj:
        return Person(
            display_name=obj.get("displayName"),
            handle=obj.get("name") or obj.get("emailAddress") or obj.get("accountId"),
        )
    if "body" in obj and "author" in obj:
        author = parse(obj.get("author"), excluded)
        return Comment(
            author=author if isinstance(author, Person) else None,
            body=obj.get("body"),
            created=obj.get("created"),
        )
    for name in _CONTAINER_KEYS:
        if isinstance(obj.get(name), list):
            return Container(Sequence(tuple(parse(i, excluded) for i in obj[name])))
    if "value" in obj and _is_scalar(obj["value"]):
        return Enumeration(obj["value"])
    if "name" in obj and _is_scalar(obj["name"]):
        return Enumeration(obj["name"])
    if all(v is None or _is_scalar(v) for v in obj.values()):
        return FlatObject(tuple((k, parse(v, excluded)) for k, v in sorted(obj.items())))
    return Opaque(obj)


def _reference(obj: Mapping[str, Any]) -> Reference:
    fields = obj.get("fields") or {}
    return Reference(
        key=obj["key"],
        summary=fields.get("summary"),
        status=_name_of(fields.get("status")),
        type=_name_of(fields.get("issuetype")),
    )


def _link(obj: Mapping[str, Any]) -> RawValue:
    link_type = obj.get("type") or {}
    if isinstance(obj.get("outwardIssue"), Mapping):
        target, relation = obj["outwardIssue"], link_type.get("outward")
    else:
        target, relation = obj.get("inwardIssue"), link_type.get("inward")
    if not isinstance(target, Mapping) or not isinstance(target.get("key"), str):
        return Opaque(dict(obj))
    ref = _reference({"key": target["key"], "fields": target.get("fields") or {}})
    return Link(relation=relation or link_type.get("name") or "", target=ref)


def _name_of(value: Any) -> Any:
    if isinstance(value, Mapping):
        return value.get("name") or value.get("value")
    return value


def _is_scalar(value: Any) -> bool:
    return isinstance(value, _SCALAR_TYPES)


# ------------------------------------------------------------------
# Resolution
# ------------------------------------------------------------------


def resolve(value: RawValue) -> Any:
    """Reduce a parsed variant to its canonical stored form, or None for "absent"."""
    if isinstance(value, Absent):
        return None
    if isinstance(value, Scalar):
        return value.value
    if isinstance(value, Sequence):
        items = [r for r in (resolve(i) for i in value.items) if r is not None]
        return items or None
    if isinstance(value, Container):
        return resolve(value.items)
    if isinstance(value, Reference):
        return _reference_dict(value.key, value.summary, value.status, value.type)
    if isinstance(value, Link):
        t = value.target
        return _reference_dict(t.key, t.summary, t.status, value.relation)
    if isinstance(value, Person):
        if value.display_name is None and value.handle is None:
            return None
        return {"display_name": value.display_name, "handle": value.handle}
    if isinstance(value, Comment):
        return {
            "author": value.author.display_name if value.author else None,
            "author_handle": value.author.handle if value.author else None,
            "body": value.body if value.body is not None else "",
            "created": value.created,
        }
    if isinstance(value, Enumeration):
        return value.value if value.value != "" else None
    if isinstance(value, FlatObject):
        flat = {k: resolve(v) for k, v in value.items}
        flat = {k: v for k, v in flat.items() if v is not None}
        return flat or None
    return json.dumps(value.value, ensure_ascii=False, sort_keys=True, default=str)


def _reference_dict(key: str, summary: Any, status: Any, type_: Any) -> dict[str, Any]:
    return {"key": key, "summary": summary, "status": status, "type": type_}
