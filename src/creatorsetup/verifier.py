# src/creatorsetup/verifier.py
from __future__ import annotations

"""Linkage invariants between an authority and its two dependent resources.

Pure functions over decoded records: no ledger access, no logging.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from creatorsetup.ledger.types import CollectionAccount, TreeConfigAccount

Json = Dict[str, Any]

RELATION_COLLECTION = "collection.update_authority"
RELATION_TREE = "tree.delegate"

_LABELS = {
    RELATION_COLLECTION: "Collection update authority",
    RELATION_TREE: "Merkle tree delegate",
}


@dataclass(frozen=True, slots=True)
class Satisfied:
    ok = True

    def to_json(self) -> Json:
        return {"ok": True}


@dataclass(frozen=True, slots=True)
class Violation:
    relation: str
    expected: str
    actual: str

    ok = False

    @property
    def label(self) -> str:
        return _LABELS.get(self.relation, self.relation)

    def to_json(self) -> Json:
        return {"ok": False, "relation": self.relation, "expected": self.expected, "actual": self.actual}


Verdict = Union[Satisfied, Violation]

SATISFIED = Satisfied()


def check_collection(authority_address: str, collection: CollectionAccount) -> Verdict:
    if collection.update_authority != authority_address:
        return Violation(RELATION_COLLECTION, authority_address, collection.update_authority)
    return SATISFIED


def check_tree(authority_address: str, tree_config: TreeConfigAccount) -> Verdict:
    if tree_config.tree_delegate != authority_address:
        return Violation(RELATION_TREE, authority_address, tree_config.tree_delegate)
    return SATISFIED


class ResourceVerifier:
    """Shared by Verify, Validate and the read-after-write checks of the creation steps."""

    def check_collection(self, authority_address: str, collection: CollectionAccount) -> Verdict:
        return check_collection(authority_address, collection)

    def check_tree(self, authority_address: str, tree_config: TreeConfigAccount) -> Verdict:
        return check_tree(authority_address, tree_config)

    def verify(
        self,
        authority_address: str,
        collection: Optional[CollectionAccount],
        tree_config: Optional[TreeConfigAccount],
    ) -> Verdict:
        """Check both relations; the collection is reported first when both fail.

        A resource passed as None is skipped.
        """
        if collection is not None:
            v = check_collection(authority_address, collection)
            if not v.ok:
                return v
        if tree_config is not None:
            v = check_tree(authority_address, tree_config)
            if not v.ok:
                return v
        return SATISFIED
