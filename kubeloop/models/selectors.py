"""Label selectors as typed predicates over immutable label snapshots."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from kubeloop.errors import ValidationError


class SelectorOperator(StrEnum):
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@dataclass(frozen=True)
class SelectorRequirement:
    """A single ``matchExpressions`` entry."""

    key: str
    operator: SelectorOperator
    values: frozenset[str] = frozenset()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == SelectorOperator.EXISTS:
            return self.key in labels
        if self.operator == SelectorOperator.DOES_NOT_EXIST:
            return self.key not in labels
        if self.operator == SelectorOperator.IN:
            return self.key in labels and labels[self.key] in self.values
        # NotIn matches when the key is absent as well
        return labels.get(self.key) not in self.values


@dataclass(frozen=True)
class LabelSelector:
    """Conjunction of equality labels and set-based requirements.

    An empty selector matches everything; ``LabelSelector.nothing()``
    matches nothing and is used for objects whose selector is absent.
    """

    match_labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    requirements: tuple[SelectorRequirement, ...] = ()
    match_none: bool = False

    @classmethod
    def nothing(cls) -> LabelSelector:
        return cls(match_none=True)

    @classmethod
    def from_labels(cls, labels: Mapping[str, str]) -> LabelSelector:
        return cls(match_labels=MappingProxyType(dict(labels)))

    @classmethod
    def from_dict(cls, data: Any) -> LabelSelector:
        """Parse ``{matchLabels: {...}, matchExpressions: [...]}``.

        A flat ``{key: value}`` mapping without either key is treated as
        ``matchLabels`` for convenience.
        """
        if data is None:
            return cls.nothing()
        if not isinstance(data, dict):
            raise ValidationError("selector must be a mapping", field="selector")

        if "matchLabels" not in data and "matchExpressions" not in data:
            return cls.from_labels(_string_map(data, "selector"))

        match_labels = _string_map(data.get("matchLabels") or {}, "selector.matchLabels")
        requirements: list[SelectorRequirement] = []
        for idx, raw in enumerate(data.get("matchExpressions") or []):
            requirements.append(parse_requirement(raw, f"selector.matchExpressions[{idx}]"))
        return cls(match_labels=MappingProxyType(match_labels), requirements=tuple(requirements))

    @property
    def empty(self) -> bool:
        return not self.match_none and not self.match_labels and not self.requirements

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.match_none:
            return False
        snapshot = MappingProxyType(dict(labels))
        for key, value in self.match_labels.items():
            if snapshot.get(key) != value:
                return False
        return all(req.matches(snapshot) for req in self.requirements)

    def __str__(self) -> str:
        if self.match_none:
            return "<none>"
        parts = [f"{k}={v}" for k, v in sorted(self.match_labels.items())]
        for req in self.requirements:
            if req.operator == SelectorOperator.EXISTS:
                parts.append(req.key)
            elif req.operator == SelectorOperator.DOES_NOT_EXIST:
                parts.append(f"!{req.key}")
            else:
                op = "in" if req.operator == SelectorOperator.IN else "notin"
                parts.append(f"{req.key} {op} ({','.join(sorted(req.values))})")
        return ",".join(parts)


def parse_requirement(raw: Any, path: str) -> SelectorRequirement:
    """Parse one ``{key, operator, values}`` expression."""
    if not isinstance(raw, dict):
        raise ValidationError(f"{path} must be a mapping", field=path)
    key = raw.get("key")
    if not isinstance(key, str) or not key:
        raise ValidationError(f"{path}.key is required", field=path)
    try:
        operator = SelectorOperator(raw.get("operator", ""))
    except ValueError as exc:
        raise ValidationError(f"{path}.operator {raw.get('operator')!r} is not supported", field=path) from exc
    values = raw.get("values") or []
    if not isinstance(values, list):
        raise ValidationError(f"{path}.values must be a list", field=path)
    if operator in (SelectorOperator.IN, SelectorOperator.NOT_IN) and not values:
        raise ValidationError(f"{path}.values must be non-empty for {operator}", field=path)
    if operator in (SelectorOperator.EXISTS, SelectorOperator.DOES_NOT_EXIST) and values:
        raise ValidationError(f"{path}.values must be empty for {operator}", field=path)
    return SelectorRequirement(key=key, operator=operator, values=frozenset(str(v) for v in values))


def parse_selector_string(text: str) -> LabelSelector:
    """Parse the ``a=b,c!=d,e`` query-string form used by list requests."""
    match_labels: dict[str, str] = {}
    requirements: list[SelectorRequirement] = []
    for part in (p.strip() for p in text.split(",")):
        if not part:
            continue
        if "!=" in part:
            key, value = part.split("!=", 1)
            requirements.append(SelectorRequirement(key.strip(), SelectorOperator.NOT_IN, frozenset({value.strip()})))
        elif "=" in part:
            key, value = part.split("=", 1)
            match_labels[key.strip().rstrip("=")] = value.strip().lstrip("=")
        elif part.startswith("!"):
            requirements.append(SelectorRequirement(part[1:].strip(), SelectorOperator.DOES_NOT_EXIST))
        else:
            requirements.append(SelectorRequirement(part, SelectorOperator.EXISTS))
    for key in [*match_labels, *(r.key for r in requirements)]:
        if not key:
            raise ValidationError(f"label selector {text!r} has an empty key", field="labelSelector")
    return LabelSelector(match_labels=MappingProxyType(match_labels), requirements=tuple(requirements))


def _string_map(data: Any, path: str) -> dict[str, str]:
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must be a mapping", field=path)
    return {str(k): str(v) for k, v in data.items()}
