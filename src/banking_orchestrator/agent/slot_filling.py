"""
Slot filling: merge newly extracted entities into the fields collected so
far for the active task and work out what is still missing.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .task_catalog import FieldValidationError, TaskDefinition, coerce_field, field_question


@dataclass
class MergeResult:
    collected_fields: Dict[str, Any]
    extra_entities: Dict[str, Any] = field(default_factory=dict)
    missing_fields: List[str] = field(default_factory=list)
    added_fields: List[str] = field(default_factory=list)
    # previously collected fields whose value this merge replaced
    changed_fields: List[str] = field(default_factory=list)
    # field name -> validator message
    rejected_fields: Dict[str, str] = field(default_factory=dict)

    @property
    def next_missing_field(self) -> Optional[str]:
        return self.missing_fields[0] if self.missing_fields else None

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields

    @property
    def updated(self) -> bool:
        return bool(self.added_fields or self.changed_fields)


def missing_fields(definition: TaskDefinition, collected: Mapping[str, Any]) -> List[str]:
    return [name for name in definition.required_fields if name not in collected]


def merge(
    definition: TaskDefinition,
    collected_fields: Mapping[str, Any],
    new_entities: Mapping[str, Any],
) -> MergeResult:
    """
    Merge ``new_entities`` over ``collected_fields`` for ``definition``.

    Known fields are validated and overwrite earlier values. Unknown keys go
    to ``extra_entities`` and never satisfy a required field. Inputs are not
    mutated.
    """
    collected = dict(collected_fields)
    result = MergeResult(collected_fields=collected)
    known = set(definition.known_fields)

    for name, value in new_entities.items():
        if name not in known:
            result.extra_entities[name] = value
            continue
        try:
            coerced = coerce_field(name, value)
        except FieldValidationError as e:
            result.rejected_fields[name] = str(e)
            continue
        if name not in collected:
            result.added_fields.append(name)
        elif collected[name] != coerced:
            result.changed_fields.append(name)
        collected[name] = coerced

    result.missing_fields = missing_fields(definition, collected)
    return result


def next_question(definition: TaskDefinition, result: MergeResult) -> Optional[str]:
    """
    The clarifying question for the next missing field, prefixed with any
    validation messages from this merge. None when nothing is missing.
    """
    nxt = result.next_missing_field
    if nxt is None:
        return None
    question = field_question(definition, nxt)
    problems = list(result.rejected_fields.values())
    if problems:
        return " ".join(problems + [question])
    return question
