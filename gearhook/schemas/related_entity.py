"""
Typed pointer from a webhook event to the business row it mutated.

Stored as two loose columns (related_entity_type, related_entity_id) with no
foreign key; in code it is one variant per known entity kind. Rows written
with a kind this build does not know come back as UnknownEntityRef.
"""
from dataclasses import dataclass
from typing import ClassVar, Optional, Union


@dataclass(frozen=True)
class PurchaseRef:
    kind: ClassVar[str] = "PendingPurchase"
    purchase_id: str

    @property
    def entity_id(self) -> str:
        return self.purchase_id


@dataclass(frozen=True)
class UnknownEntityRef:
    entity_type: str
    entity_id: str

    @property
    def kind(self) -> str:
        return self.entity_type


RelatedEntity = Union[PurchaseRef, UnknownEntityRef]

_KNOWN_KINDS = {
    PurchaseRef.kind: PurchaseRef,
}


def from_columns(entity_type: Optional[str], entity_id: Optional[str]) -> Optional[RelatedEntity]:
    if not entity_type or not entity_id:
        return None
    ref_cls = _KNOWN_KINDS.get(entity_type)
    if ref_cls is None:
        return UnknownEntityRef(entity_type=entity_type, entity_id=entity_id)
    return ref_cls(entity_id)


def to_columns(ref: Optional[RelatedEntity]) -> tuple[Optional[str], Optional[str]]:
    if ref is None:
        return None, None
    return ref.kind, ref.entity_id
