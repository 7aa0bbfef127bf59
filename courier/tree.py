"""Collection tree traversal.

The tree is an immutable snapshot supplied by the tree reader; nothing here
mutates it. Flattening is a stable pre-order walk: a node's own requests by
order_index, then each child folder (by order_index) recursively.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import CollectionNode, Request


@dataclass(frozen=True, slots=True)
class FlatRequest:
    """A request plus the folders above it, nearest first (collection root last)."""

    request: Request
    ancestors: tuple[CollectionNode, ...]
    folder_path: str = ""


def flatten_requests(
    node: CollectionNode,
    ancestors: tuple[CollectionNode, ...] = (),
) -> list[FlatRequest]:
    """Return every request under ``node`` in run order.

    ``ancestors`` are the nodes above ``node`` (nearest first) when ``node`` is a
    folder inside a larger tree; they extend each request's variable chain.
    """
    out: list[FlatRequest] = []
    _walk(node, (node, *ancestors), out)
    return out


def _walk(node: CollectionNode, chain: tuple[CollectionNode, ...], out: list[FlatRequest]) -> None:
    path = "/".join(n.name for n in reversed(chain[:-1])) if len(chain) > 1 else ""
    for request in node.ordered_requests():
        out.append(FlatRequest(request=request, ancestors=chain, folder_path=path))
    for folder in node.ordered_folders():
        _walk(folder, (folder, *chain), out)


def find_path(root: CollectionNode, node_id: str) -> tuple[CollectionNode, ...] | None:
    """Chain from the node with ``node_id`` up to ``root`` (nearest first), or None."""
    if root.id == node_id:
        return (root,)
    for folder in root.ordered_folders():
        sub = find_path(folder, node_id)
        if sub is not None:
            return (*sub, root)
    return None


def find_folder(root: CollectionNode, ref: str) -> CollectionNode | None:
    """Locate a folder by id, falling back to the first pre-order match by name."""
    by_name: CollectionNode | None = None
    stack = [root]
    while stack:
        node = stack.pop(0)
        if node.id == ref:
            return node
        if by_name is None and node.name == ref and node is not root:
            by_name = node
        stack[0:0] = node.ordered_folders()
    return by_name
