"""
Shared traversal over link-bearing JSON.

A node is either a Leaf (a link: a mapping carrying a string ``_id``) or a
Container (any other mapping). Everything else is a scalar and is copied
through untouched. ``transform_links`` rebuilds a structure with every Leaf
replaced, ``iter_links`` walks the leaves depth first in key order.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Tuple, Union


@dataclass(frozen=True)
class Leaf:
    id: str
    node: Dict[str, Any]

    @property
    def versioned(self) -> bool:
        return "_rev" in self.node


@dataclass(frozen=True)
class Container:
    items: Dict[str, Any]


Node = Union[Leaf, Container, None]


def classify(value: Any) -> Node:
    if not isinstance(value, dict):
        return None
    if isinstance(value.get("_id"), str):
        return Leaf(id=value["_id"], node=value)
    return Container(items=value)


def transform_links(value: Any, replace: Callable[[Leaf], Any]) -> Any:
    node = classify(value)
    if isinstance(node, Leaf):
        return replace(node)
    if isinstance(node, Container):
        return {key: transform_links(child, replace) for key, child in node.items.items()}
    return value


def iter_links(value: Any, path: Tuple[str, ...] = ()) -> Iterator[Tuple[Tuple[str, ...], Leaf]]:
    node = classify(value)
    if isinstance(node, Leaf):
        yield path, node
    elif isinstance(node, Container):
        for key, child in node.items.items():
            yield from iter_links(child, path + (key,))


def links_to_refs(value: Any) -> Any:
    """{_id: X} -> {_ref: X}, recursively"""
    return transform_links(value, lambda leaf: {"_ref": leaf.id})


def links_to_versioned(value: Any) -> Any:
    """{_id: X} -> {_id: X, _rev: 0}, recursively"""
    return transform_links(value, lambda leaf: {"_id": leaf.id, "_rev": 0})


def link_ids(value: Any) -> set:
    return {leaf.id for _, leaf in iter_links(value)}
