"""Declarative aggregation pipelines over the document collections.

A pipeline is a base collection plus an ordered tuple of immutable stages.
The same stages are evaluated in memory by :func:`evaluate` and compiled to
SQL by :func:`vidtube.storage.postgres.compile_pipeline`, so every derived
view is written once and runs against either store.

Accounts are stripped of their credential fields whenever they are read as
a pipeline source, including through a ``Lookup``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple, Union

# Fields that never leave the storage layer through a pipeline
SENSITIVE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "accounts": ("password_hash", "refresh_token"),
}

LOOKUP_MODES = ("list", "count", "exists")


@dataclass(frozen=True)
class In:
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class NotNull:
    pass


@dataclass(frozen=True)
class Match:
    """Keep rows whose fields equal every condition."""

    conditions: Mapping[str, Any]


@dataclass(frozen=True)
class Search:
    """Keep rows where any of ``paths`` holds a string containing ``text``.

    Matching ignores case and treats ``text`` literally. An empty ``text``
    keeps every row.
    """

    paths: Tuple[str, ...]
    text: str


@dataclass(frozen=True)
class Lookup:
    """Join ``from_`` rows whose ``foreign_field`` equals ``local_field``.

    ``mode`` selects what is attached under ``as_``: the joined documents
    (``list``), their cardinality (``count``) or whether any matched
    (``exists``). With ``many_local`` the local field is an array and the
    joined documents follow its order, duplicates included. The optional
    ``pipeline`` runs over the joined documents before they are attached.
    """

    from_: str
    local_field: str
    foreign_field: str
    as_: str
    pipeline: Tuple["Stage", ...] = ()
    mode: str = "list"
    many_local: bool = False

    def __post_init__(self) -> None:
        if self.mode not in LOOKUP_MODES:
            raise ValueError(f"unknown lookup mode {self.mode!r}")
        if "." in self.as_:
            raise ValueError("lookup output must be a top-level field")


@dataclass(frozen=True)
class Unwind:
    path: str
    preserve_empty: bool = False


@dataclass(frozen=True)
class Project:
    """Reshape rows; values are source paths or nested mappings of paths."""

    fields: Mapping[str, Any]


@dataclass(frozen=True)
class Sum:
    path: str


@dataclass(frozen=True)
class Count:
    pass


@dataclass(frozen=True)
class First:
    path: str


Accumulator = Union[Sum, Count, First]


@dataclass(frozen=True)
class Group:
    """Collapse every row into a single row of accumulated values."""

    accumulators: Mapping[str, Accumulator]


@dataclass(frozen=True)
class Sort:
    keys: Tuple[Tuple[str, int], ...]

    def __post_init__(self) -> None:
        for _, direction in self.keys:
            if direction not in (1, -1):
                raise ValueError("sort direction must be 1 or -1")


@dataclass(frozen=True)
class Skip:
    count: int


@dataclass(frozen=True)
class Limit:
    count: int


Stage = Union[Match, Search, Lookup, Unwind, Project, Group, Sort, Skip, Limit]


@dataclass(frozen=True)
class Pipeline:
    collection: str
    stages: Tuple[Stage, ...] = field(default_factory=tuple)

    def then(self, *stages: Stage) -> "Pipeline":
        return Pipeline(self.collection, self.stages + tuple(stages))


def split_path(path: str) -> List[str]:
    return [part for part in path.split(".") if part]


def get_path(doc: Mapping[str, Any], path: str) -> Any:
    current: Any = doc
    for part in split_path(path):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = split_path(path)
    current = doc
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def strip_sensitive(collection: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
    hidden = SENSITIVE_FIELDS.get(collection, ())
    return {key: copy.deepcopy(value) for key, value in doc.items() if key not in hidden}


def source_rows(collection: str, collections: Mapping[str, Iterable[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
    if collection not in collections:
        raise KeyError(f"unknown collection {collection!r}")
    return [strip_sensitive(collection, doc) for doc in collections[collection]]


def _matches(doc: Mapping[str, Any], conditions: Mapping[str, Any]) -> bool:
    for path, expected in conditions.items():
        actual = get_path(doc, path)
        if isinstance(expected, NotNull):
            if actual is None:
                return False
        elif isinstance(expected, In):
            if actual is None or actual not in expected.values:
                return False
        elif actual is None or actual != expected:
            return False
    return True


def _contains(doc: Mapping[str, Any], paths: Sequence[str], needle: str) -> bool:
    for path in paths:
        value = get_path(doc, path)
        if isinstance(value, str) and needle in value.lower():
            return True
    return False


def _lookup(
    rows: List[Dict[str, Any]],
    stage: Lookup,
    collections: Mapping[str, Iterable[Mapping[str, Any]]],
) -> List[Dict[str, Any]]:
    foreign = source_rows(stage.from_, collections)
    out = []
    for row in rows:
        local = get_path(row, stage.local_field)
        keys = local if stage.many_local else [local]
        if not isinstance(keys, list):
            keys = []
        joined: List[Dict[str, Any]] = []
        for key in keys:
            if key is None:
                continue
            joined.extend(
                copy.deepcopy(doc)
                for doc in foreign
                if get_path(doc, stage.foreign_field) == key
            )
        if stage.pipeline:
            joined = _run(joined, stage.pipeline, collections)
        if stage.mode == "count":
            value: Any = len(joined)
        elif stage.mode == "exists":
            value = bool(joined)
        else:
            value = joined
        out.append({**row, stage.as_: value})
    return out


def _unwind(rows: List[Dict[str, Any]], stage: Unwind) -> List[Dict[str, Any]]:
    out = []
    for row in rows:
        items = get_path(row, stage.path)
        if not isinstance(items, list) or not items:
            if stage.preserve_empty:
                unwound = copy.deepcopy(row)
                _set_path(unwound, stage.path, None)
                out.append(unwound)
            continue
        for item in items:
            unwound = copy.deepcopy(row)
            _set_path(unwound, stage.path, item)
            out.append(unwound)
    return out


def _project_value(row: Mapping[str, Any], shape: Any) -> Any:
    if isinstance(shape, Mapping):
        return {name: _project_value(row, sub) for name, sub in shape.items()}
    return copy.deepcopy(get_path(row, shape))


def _group(rows: List[Dict[str, Any]], stage: Group) -> List[Dict[str, Any]]:
    result: Dict[str, Any] = {}
    for name, acc in stage.accumulators.items():
        if isinstance(acc, Count):
            result[name] = len(rows)
        elif isinstance(acc, Sum):
            total = 0
            for row in rows:
                value = get_path(row, acc.path)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    total += value
            result[name] = total
        elif isinstance(acc, First):
            result[name] = get_path(rows[0], acc.path) if rows else None
        else:
            raise TypeError(f"unsupported accumulator {acc!r}")
    return [result]


def _sort_key(value: Any) -> Tuple[int, Any]:
    # nulls sort first, matching jsonb ordering of 'null'
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (3, value)
    if isinstance(value, (int, float)):
        return (2, value)
    return (1, str(value))


def _sort(rows: List[Dict[str, Any]], stage: Sort) -> List[Dict[str, Any]]:
    ordered = list(rows)
    # apply keys from least to most significant; list.sort is stable
    for path, direction in reversed(stage.keys):
        ordered.sort(key=lambda row: _sort_key(get_path(row, path)), reverse=direction < 0)
    return ordered


def _run(
    rows: List[Dict[str, Any]],
    stages: Sequence[Stage],
    collections: Mapping[str, Iterable[Mapping[str, Any]]],
) -> List[Dict[str, Any]]:
    for stage in stages:
        if isinstance(stage, Match):
            rows = [row for row in rows if _matches(row, stage.conditions)]
        elif isinstance(stage, Search):
            if stage.text:
                needle = stage.text.lower()
                rows = [row for row in rows if _contains(row, stage.paths, needle)]
        elif isinstance(stage, Lookup):
            rows = _lookup(rows, stage, collections)
        elif isinstance(stage, Unwind):
            rows = _unwind(rows, stage)
        elif isinstance(stage, Project):
            rows = [_project_value(row, stage.fields) for row in rows]
        elif isinstance(stage, Group):
            rows = _group(rows, stage)
        elif isinstance(stage, Sort):
            rows = _sort(rows, stage)
        elif isinstance(stage, Skip):
            rows = rows[max(stage.count, 0):]
        elif isinstance(stage, Limit):
            rows = rows[: max(stage.count, 0)]
        else:
            raise TypeError(f"unsupported stage {stage!r}")
    return rows


def evaluate(
    pipeline: Pipeline,
    collections: Mapping[str, Iterable[Mapping[str, Any]]],
) -> List[Dict[str, Any]]:
    """Run ``pipeline`` over in-memory collections of documents.

    ``collections`` maps collection names to documents in insertion order.
    """
    return _run(source_rows(pipeline.collection, collections), pipeline.stages, collections)


__all__ = [
    "Count",
    "First",
    "Group",
    "In",
    "Limit",
    "Lookup",
    "Match",
    "NotNull",
    "Pipeline",
    "Project",
    "SENSITIVE_FIELDS",
    "Search",
    "Skip",
    "Sort",
    "Stage",
    "Sum",
    "Unwind",
    "evaluate",
    "get_path",
    "split_path",
    "strip_sensitive",
]
