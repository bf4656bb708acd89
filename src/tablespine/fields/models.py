"""Field descriptors and the ``FieldKind`` tagged union.

A field's raw ``type`` describes the value it holds; its *kind* describes how
that value is produced. The two can disagree (a conditional lookup stored with
the resolved value type ``number``), so the kind is resolved once by the
normalizer and carried explicitly from then on.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union


class FieldKindName(str, Enum):
    """How a field's value is produced."""

    PLAIN = "plain"
    LINK = "link"
    LOOKUP = "lookup"
    ROLLUP = "rollup"
    FORMULA = "formula"
    CONDITIONAL_LOOKUP = "conditionalLookup"
    CONDITIONAL_ROLLUP = "conditionalRollup"


class Relationship(str, Enum):
    ONE_ONE = "oneOne"
    ONE_MANY = "oneMany"
    MANY_ONE = "manyOne"
    MANY_MANY = "manyMany"

    def inverse(self) -> Relationship:
        return {
            Relationship.ONE_MANY: Relationship.MANY_ONE,
            Relationship.MANY_ONE: Relationship.ONE_MANY,
        }.get(self, self)

    @property
    def is_multiple(self) -> bool:
        return self in (Relationship.ONE_MANY, Relationship.MANY_MANY)


PLAIN_VALUE_TYPE = "singleLineText"

# Kinds whose values the engine computes; user writes to them are rejected.
COMPUTED_KINDS = frozenset(
    {
        FieldKindName.LOOKUP,
        FieldKindName.ROLLUP,
        FieldKindName.FORMULA,
        FieldKindName.CONDITIONAL_LOOKUP,
        FieldKindName.CONDITIONAL_ROLLUP,
    }
)

# Kinds that aggregate linked records; formulas may not depend on them.
AGGREGATE_KINDS = frozenset({FieldKindName.ROLLUP, FieldKindName.CONDITIONAL_ROLLUP})


@dataclass(frozen=True)
class Condition:
    """Filter, optional sort and limit applied before projection/aggregation."""

    filter: dict[str, Any]
    sort: dict[str, Any] | None = None
    limit: int | None = None


@dataclass(frozen=True)
class PlainKind:
    name: ClassVar[FieldKindName] = FieldKindName.PLAIN


@dataclass(frozen=True)
class LinkKind:
    name: ClassVar[FieldKindName] = FieldKindName.LINK

    relationship: Relationship
    foreign_table_id: str
    lookup_field_id: str
    symmetric_field_id: str | None = None
    is_one_way: bool = False


@dataclass(frozen=True)
class LookupKind:
    name: ClassVar[FieldKindName] = FieldKindName.LOOKUP

    foreign_table_id: str
    link_field_id: str
    lookup_field_id: str


@dataclass(frozen=True)
class RollupKind:
    name: ClassVar[FieldKindName] = FieldKindName.ROLLUP

    foreign_table_id: str
    link_field_id: str
    lookup_field_id: str
    expression: str


@dataclass(frozen=True)
class FormulaKind:
    name: ClassVar[FieldKindName] = FieldKindName.FORMULA

    expression: str
    references: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConditionalLookupKind:
    name: ClassVar[FieldKindName] = FieldKindName.CONDITIONAL_LOOKUP

    foreign_table_id: str
    lookup_field_id: str
    condition: Condition


@dataclass(frozen=True)
class ConditionalRollupKind:
    name: ClassVar[FieldKindName] = FieldKindName.CONDITIONAL_ROLLUP

    foreign_table_id: str
    lookup_field_id: str
    condition: Condition
    expression: str


FieldKind = Union[
    PlainKind,
    LinkKind,
    LookupKind,
    RollupKind,
    FormulaKind,
    ConditionalLookupKind,
    ConditionalRollupKind,
]

_KIND_CLASSES: dict[FieldKindName, type] = {
    PlainKind.name: PlainKind,
    LinkKind.name: LinkKind,
    LookupKind.name: LookupKind,
    RollupKind.name: RollupKind,
    FormulaKind.name: FormulaKind,
    ConditionalLookupKind.name: ConditionalLookupKind,
    ConditionalRollupKind.name: ConditionalRollupKind,
}


@dataclass(frozen=True)
class FieldDescriptor:
    """A classified field."""

    id: str
    table_id: str
    name: str
    kind: FieldKind = field(default_factory=PlainKind)
    value_type: str = PLAIN_VALUE_TYPE

    @property
    def kind_name(self) -> FieldKindName:
        return self.kind.name

    @property
    def is_computed(self) -> bool:
        return self.kind.name in COMPUTED_KINDS

    @property
    def is_link(self) -> bool:
        return self.kind.name is FieldKindName.LINK

    def to_dict(self) -> dict[str, Any]:
        kind = asdict(self.kind)
        kind["name"] = self.kind.name.value
        return {
            "id": self.id,
            "table_id": self.table_id,
            "name": self.name,
            "value_type": self.value_type,
            "kind": kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDescriptor:
        kind_data = dict(data.get("kind") or {})
        kind_name = FieldKindName(kind_data.pop("name", FieldKindName.PLAIN.value))
        if "condition" in kind_data:
            kind_data["condition"] = Condition(**kind_data["condition"])
        if "relationship" in kind_data:
            kind_data["relationship"] = Relationship(kind_data["relationship"])
        if "references" in kind_data:
            kind_data["references"] = tuple(kind_data["references"])
        return cls(
            id=data["id"],
            table_id=data["table_id"],
            name=data.get("name", data["id"]),
            kind=_KIND_CLASSES[kind_name](**kind_data),
            value_type=data.get("value_type", PLAIN_VALUE_TYPE),
        )
