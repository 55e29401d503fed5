"""File provider collaborators used to resolve flow references.

Identities are normalized POSIX paths. `LocalFileProvider` maps them onto
a directory on disk; `InMemoryFileProvider` keeps everything in a dict.
"""

from __future__ import annotations

import posixpath
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import FlowNotFoundError


def normalize_path(path: str) -> str:
    """Normalize separators and dot segments of a path identity."""
    cleaned = path.replace("\\", "/")
    if not cleaned:
        return cleaned
    return posixpath.normpath(cleaned)


def is_absolute(path: str) -> bool:
    """Whether a path is absolute (POSIX root or Windows drive)."""
    return path.startswith("/") or (len(path) > 1 and path[1] == ":" and path[0].isalpha())


@dataclass
class FileNode:
    """A file or directory in the provider's tree."""

    id: str
    name: str
    is_dir: bool = False
    children: List["FileNode"] = field(default_factory=list)

    def walk(self) -> Iterator["FileNode"]:
        """Yield this node and every descendant, depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass
class FlowSource:
    """A resolved flow reference."""

    file_id: str
    name: str
    text: str


class FileProvider(ABC):
    """Abstract file access used by the loader, composer and reconciler."""

    @abstractmethod
    def read_file(self, file_id: str) -> str:
        """Read a file's text.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        pass

    @abstractmethod
    def write_file(self, file_id: str, text: str) -> None:
        """Create or overwrite a file."""
        pass

    @abstractmethod
    def tree(self) -> FileNode:
        """Return the root node of the file tree."""
        pass

    @abstractmethod
    def rename(self, file_id: str, new_id: str) -> None:
        """Move a file or directory to a new identity."""
        pass

    @abstractmethod
    def delete(self, file_id: str) -> None:
        """Delete a file or directory."""
        pass

    @abstractmethod
    def create_dir(self, dir_id: str) -> None:
        """Create a directory (and missing parents)."""
        pass

    def list_dir(self, dir_id: str) -> List[FileNode]:
        """List the direct children of a directory."""
        node = self.find_by_id(dir_id)
        if node is None or not node.is_dir:
            return []
        return list(node.children)

    def iter_files(self, dir_id: Optional[str] = None) -> Iterator[FileNode]:
        """Yield every file under a directory (default: the whole tree)."""
        root = self.tree() if dir_id is None else self.find_by_id(dir_id)
        if root is None:
            return
        for node in root.walk():
            if not node.is_dir:
                yield node

    def find_by_id(self, file_id: str) -> Optional[FileNode]:
        """Find a node by exact identity."""
        target = normalize_path(file_id)
        for node in self.tree().walk():
            if node.id == target:
                return node
        return None

    def find_by_name(self, name: str) -> Optional[FileNode]:
        """Find the first file whose name matches."""
        for node in self.iter_files():
            if node.name == name:
                return node
        return None

    def resolve_reference(self, reference: str, base_dir: Optional[str] = None) -> FlowSource:
        """Resolve a 'flow' reference to its content.

        Tries the reference relative to base_dir, then as an identity,
        then by file name anywhere in the tree.

        Args:
            reference: The reference as written in the flow
            base_dir: Directory of the referencing flow

        Returns:
            The resolved FlowSource

        Raises:
            FlowNotFoundError: If no candidate exists
            OSError: If the matched file cannot be read
        """
        searched: List[str] = []
        candidates: List[str] = []
        if base_dir and not is_absolute(reference):
            candidates.append(normalize_path(posixpath.join(base_dir, reference)))
        candidates.append(normalize_path(reference))

        for candidate in candidates:
            searched.append(candidate)
            node = self.find_by_id(candidate)
            if node is not None and not node.is_dir:
                return FlowSource(node.id, node.name, self.read_file(node.id))

        searched.append(f"*/{posixpath.basename(reference)}")
        node = self.find_by_name(posixpath.basename(reference))
        if node is not None:
            return FlowSource(node.id, node.name, self.read_file(node.id))

        raise FlowNotFoundError(reference, searched)


class LocalFileProvider(FileProvider):
    """Files on disk under a root directory."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _path(self, file_id: str) -> Path:
        path = Path(file_id)
        return path if path.is_absolute() else self.root / path

    def id_for(self, path: Path) -> str:
        """Return the identity of a path on disk."""
        return normalize_path(path.resolve().as_posix())

    def read_file(self, file_id: str) -> str:
        return self._path(file_id).read_text(encoding="utf-8")

    def write_file(self, file_id: str, text: str) -> None:
        path = self._path(file_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def rename(self, file_id: str, new_id: str) -> None:
        self._path(file_id).rename(self._path(new_id))

    def delete(self, file_id: str) -> None:
        path = self._path(file_id)
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()

    def create_dir(self, dir_id: str) -> None:
        self._path(dir_id).mkdir(parents=True, exist_ok=True)

    def tree(self) -> FileNode:
        return self._build_node(self.root)

    def _build_node(self, path: Path) -> FileNode:
        node = FileNode(id=self.id_for(path), name=path.name, is_dir=path.is_dir())
        if node.is_dir:
            for child in sorted(path.iterdir(), key=lambda p: p.name):
                if child.name.startswith("."):
                    continue
                node.children.append(self._build_node(child))
        return node


class InMemoryFileProvider(FileProvider):
    """Files kept in a dict keyed by identity.

    Useful for editors holding unsaved buffers and for tests.
    """

    def __init__(self, files: Optional[Dict[str, str]] = None, root: str = "/") -> None:
        self.root = normalize_path(root)
        self._files: Dict[str, str] = {}
        self._dirs: set = set()
        for file_id, text in (files or {}).items():
            self.write_file(file_id, text)

    def _id(self, file_id: str) -> str:
        if is_absolute(file_id):
            return normalize_path(file_id)
        return normalize_path(posixpath.join(self.root, file_id))

    def read_file(self, file_id: str) -> str:
        key = self._id(file_id)
        if key not in self._files:
            raise FileNotFoundError(file_id)
        return self._files[key]

    def write_file(self, file_id: str, text: str) -> None:
        key = self._id(file_id)
        self._files[key] = text
        self.create_dir(posixpath.dirname(key))

    def rename(self, file_id: str, new_id: str) -> None:
        old, new = self._id(file_id), self._id(new_id)
        moved: List[Tuple[str, str]] = [
            (key, new + key[len(old):])
            for key in self._files
            if key == old or key.startswith(old + "/")
        ]
        if not moved and old not in self._dirs:
            raise FileNotFoundError(file_id)
        for key, new_key in moved:
            self._files[new_key] = self._files.pop(key)
        self._dirs = {
            new + d[len(old):] if d == old or d.startswith(old + "/") else d
            for d in self._dirs
        }

    def delete(self, file_id: str) -> None:
        key = self._id(file_id)
        self._files = {
            k: v for k, v in self._files.items() if k != key and not k.startswith(key + "/")
        }
        self._dirs = {d for d in self._dirs if d != key and not d.startswith(key + "/")}

    def create_dir(self, dir_id: str) -> None:
        key = self._id(dir_id)
        while key and key != self.root and key not in self._dirs:
            self._dirs.add(key)
            parent = posixpath.dirname(key)
            if parent == key:
                break
            key = parent

    def tree(self) -> FileNode:
        nodes: Dict[str, FileNode] = {
            self.root: FileNode(id=self.root, name=posixpath.basename(self.root), is_dir=True)
        }
        for dir_id in sorted(self._dirs):
            nodes[dir_id] = FileNode(id=dir_id, name=posixpath.basename(dir_id), is_dir=True)
        for file_id in sorted(self._files):
            nodes[file_id] = FileNode(id=file_id, name=posixpath.basename(file_id))

        for node_id in sorted(nodes):
            if node_id == self.root or posixpath.dirname(node_id) == node_id:
                continue
            parent = nodes.get(posixpath.dirname(node_id), nodes[self.root])
            parent.children.append(nodes[node_id])
        return nodes[self.root]
