"""Pure helpers — name conversion, list coercion and deep merging.

Invariants:
    - No function here mutates its inputs, except merge_deeply's target
"""

import re
from typing import Any

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_SEPARATORS = re.compile(r"[-_\s]+(.)?")


def snake_case(name: str) -> str:
    """`modelTwoId` → `model_two_id`, `ModelOne` → `model_one`."""
    return _CAMEL_BOUNDARY.sub("_", name).replace("-", "_").lower()


def camelize(name: str) -> str:
    """`belongs-to` / `belongs_to` → `belongsTo`; camelCase passes through."""
    return _SEPARATORS.sub(lambda m: (m.group(1) or "").upper(), name)


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def merge_deeply(target: Any, *sources: Any) -> Any:
    """Merge sources into target: dicts recursively, lists index-wise.

    List entries that can't be merged with the entry at the same index are
    appended. Scalars in a source replace the target value.
    """
    for source in sources:
        target = _merge_values(target, source)
    return target


def _merge_values(target: Any, source: Any) -> Any:
    if isinstance(target, dict) and isinstance(source, dict):
        for key, value in source.items():
            target[key] = _merge_values(target[key], value) if key in target else value
        return target
    if isinstance(target, list) and isinstance(source, list):
        for index, value in enumerate(source):
            if index < len(target) and _mergeable(target[index], value):
                target[index] = _merge_values(target[index], value)
            else:
                target.append(value)
        return target
    return target if source is None else source


def _mergeable(a: Any, b: Any) -> bool:
    return (
        (isinstance(a, dict) and isinstance(b, dict))
        or (isinstance(a, list) and isinstance(b, list))
    )
