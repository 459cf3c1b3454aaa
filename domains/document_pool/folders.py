"""
Folder forest builder.

Turns flat ``folder_path`` strings into a forest of immutable FolderNode
trees. Built in two passes: index every observed, declared and
synthesized ancestor path, then assemble nodes deepest-first so every
child exists before its parent.

Paths are case-sensitive and split only on ``/``; nothing is normalized.
Documents without a folder path are left to the caller's unfiled bucket.
"""

from collections import defaultdict
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from domains.document_pool.models import Document, FolderNode

SEPARATOR = "/"


def ancestor_paths(path: str) -> List[str]:
    """Strict-prefix ancestors of ``path``: ``"A/B/C"`` -> ``["A", "A/B"]``."""
    segments = path.split(SEPARATOR)
    return [SEPARATOR.join(segments[:i]) for i in range(1, len(segments))]


def parent_path(path: str) -> Optional[str]:
    if SEPARATOR not in path:
        return None
    return path.rsplit(SEPARATOR, 1)[0]


def group_by_path(documents: Iterable[Document]) -> Dict[str, List[Document]]:
    """Group documents by exact folder path, skipping unfiled ones."""
    grouped: Dict[str, List[Document]] = defaultdict(list)
    for doc in documents:
        if doc.folder_path:
            grouped[doc.folder_path].append(doc)
    return grouped


def index_paths(observed: Iterable[str]) -> set[str]:
    """Every observed path plus all of its ancestors."""
    paths: set[str] = set()
    for path in observed:
        paths.add(path)
        paths.update(ancestor_paths(path))
    return paths


def build_forest(
    documents: Iterable[Document],
    declared_paths: Sequence[str] = (),
) -> List[FolderNode]:
    """
    Build the folder forest for ``documents``.

    Args:
        documents: Current document set (unfiled documents are ignored)
        declared_paths: Folders that exist even when empty; merged with
            document-derived paths by exact full path

    Returns:
        Root nodes sorted by full path
    """
    grouped = group_by_path(documents)
    paths = index_paths(list(grouped) + [p for p in declared_paths if p])

    children_of: Dict[Optional[str], List[str]] = defaultdict(list)
    for path in paths:
        children_of[parent_path(path)].append(path)

    # deepest first, so children are always materialized before parents
    arena: Dict[str, FolderNode] = {}
    for path in sorted(paths, key=lambda p: p.count(SEPARATOR), reverse=True):
        direct = tuple(sorted(grouped.get(path, ()), key=lambda d: (d.created_at, d.id), reverse=True))
        children = tuple(arena[c] for c in sorted(children_of.get(path, ())))
        parent = parent_path(path)
        arena[path] = FolderNode(
            path_segment=path if parent is None else path[len(parent) + 1:],
            full_path=path,
            direct_documents=direct,
            children=children,
            direct_count=len(direct),
            recursive_count=len(direct) + sum(c.recursive_count for c in children),
        )

    return [arena[root] for root in sorted(children_of.get(None, ()))]


def iter_nodes(forest: Iterable[FolderNode]) -> Iterator[FolderNode]:
    """Depth-first walk over every node of the forest."""
    for node in forest:
        yield node
        yield from iter_nodes(node.children)


def find_node(forest: Iterable[FolderNode], full_path: str) -> Optional[FolderNode]:
    for node in iter_nodes(forest):
        if node.full_path == full_path:
            return node
    return None


def all_documents(node: FolderNode) -> List[Document]:
    """Documents of ``node`` and every descendant."""
    docs = list(node.direct_documents)
    for child in node.children:
        docs.extend(all_documents(child))
    return docs
