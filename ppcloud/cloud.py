"""Persistent point cloud file: a header, a node section and a vertex section."""

from __future__ import annotations

import logging
import math
import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import BinaryIO, ClassVar, Iterable, List, Optional, Sequence, Tuple

_log = logging.getLogger(__name__)

Vec3 = Tuple[float, float, float]

BLOCK_ALIGNMENT = 1024
_U64 = (1 << 64) - 1

_HEADER = struct.Struct("<8Q")
_NODE = struct.Struct("<QI6f4xQQ4Q")
_VERTEX = struct.Struct("<3f3f3Bx")


@dataclass
class AABB:
    """Axis aligned bounding box; empty until a point is added."""

    min: Vec3 = (math.inf, math.inf, math.inf)
    max: Vec3 = (-math.inf, -math.inf, -math.inf)

    def update(self, pos: Sequence[float]) -> None:
        self.min = tuple(lo if lo < p else p for lo, p in zip(self.min, pos))
        self.max = tuple(hi if hi > p else p for hi, p in zip(self.max, pos))

    def size(self) -> Vec3:
        return tuple(hi - lo for lo, hi in zip(self.min, self.max))

    def inside(self, pos: Sequence[float]) -> bool:
        return all(lo <= p <= hi for lo, p, hi in zip(self.min, pos, self.max))


@dataclass
class PLYVertex:
    pos: Vec3 = (0.0, 0.0, 0.0)
    normal: Vec3 = (0.0, 0.0, 0.0)
    color: Tuple[int, int, int] = (0, 0, 0)


@dataclass
class ConvertOptions:
    read_buffer: int = 1024 * 128
    write_buffer: int = 1024 * 128
    process_workers: int = 1
    lods: int = 4
    verts_per_node: int = 16 * 1024
    max_verts_in_memory: int = 128 * 1024 * 1024


class NodeMode(IntEnum):
    XY = 0
    XZ = 1
    YZ = 2


@dataclass
class PPCNode:
    """A quadtree node as stored in the node section."""

    CHILDREN: ClassVar[int] = 4

    id: int = 0
    mode: NodeMode = NodeMode.XY
    has_children: bool = False
    aabb: AABB = field(default_factory=AABB)
    vert_count: int = 0
    vert_offset: int = 0
    children: List[int] = field(default_factory=lambda: [0] * PPCNode.CHILDREN)


class OpenMode(IntFlag):
    IN = 1
    OUT = 2
    CREATE = 4


NODE_SIZE = _NODE.size
VERTEX_SIZE = _VERTEX.size
HEADER_SIZE = _HEADER.size


@dataclass
class _Header:
    file_size: int = 0
    vertices_section_offset: int = 0
    node_section_offset: int = 0
    vertex_count: int = 0
    vertex_capacity: int = 0
    node_count: int = 0
    node_capacity: int = 0
    root: int = 0

    def pack(self) -> bytes:
        return _HEADER.pack(
            self.file_size,
            self.vertices_section_offset,
            self.node_section_offset,
            self.vertex_count,
            self.vertex_capacity,
            self.node_count,
            self.node_capacity,
            self.root,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "_Header":
        return cls(*_HEADER.unpack(data))


def _pack_node(node: PPCNode) -> bytes:
    bits = (int(node.mode) & 0xF) | (int(bool(node.has_children)) << 4)
    return _NODE.pack(
        node.id & _U64,
        bits,
        *node.aabb.min,
        *node.aabb.max,
        node.vert_count & _U64,
        node.vert_offset & _U64,
        *(child & _U64 for child in node.children),
    )


def _unpack_node(data: bytes) -> PPCNode:
    values = _NODE.unpack(data)
    node_id, bits = values[0], values[1]
    aabb = AABB(tuple(values[2:5]), tuple(values[5:8]))
    return PPCNode(
        id=node_id,
        mode=NodeMode(bits & 0xF),
        has_children=bool(bits & 0x10),
        aabb=aabb,
        vert_count=values[8],
        vert_offset=values[9],
        children=list(values[10:14]),
    )


def _pack_vertex(vertex: PLYVertex) -> bytes:
    return _VERTEX.pack(*vertex.pos, *vertex.normal, *(c & 0xFF for c in vertex.color))


def _unpack_vertex(data: bytes) -> PLYVertex:
    values = _VERTEX.unpack(data)
    return PLYVertex(tuple(values[0:3]), tuple(values[3:6]), tuple(values[6:9]))


def _align(offset: int, alignment: int) -> int:
    return -(-offset // alignment) * alignment


def _file_mode(mode: OpenMode) -> str:
    if mode & OpenMode.IN and mode & OpenMode.OUT:
        return "r+b"
    if mode & OpenMode.OUT:
        return "wb"
    return "rb"


class PPCloud:
    """Random access reader and writer for a persistent point cloud file."""

    def __init__(self, filename: str, mode: OpenMode) -> None:
        self.filename = os.fspath(filename)
        self.mode = OpenMode(mode)
        self.readonly = not (self.mode & OpenMode.OUT)
        self._header = _Header()
        try:
            if self.mode & OpenMode.CREATE:
                open(self.filename, "wb").close()
            self._file: BinaryIO = open(self.filename, _file_mode(self.mode))
        except OSError as exc:
            raise ValueError(
                f"Cannot load ppcloud : {self.filename}({exc.errno})"
            ) from exc

        if self.mode == OpenMode.OUT or self.mode & OpenMode.CREATE:
            self.write_header()
        else:
            self.read_header()

    def _require_writable(self) -> None:
        if self.readonly:
            raise ValueError(f"ppcloud {self.filename} is opened read-only")

    @property
    def _nodes_section(self) -> int:
        return self._header.node_section_offset

    @property
    def _vertices_section(self) -> int:
        return self._header.vertices_section_offset

    def reserve(self, nodes: int, verts: int) -> None:
        """Lay out the sections for the given capacities and size the file."""
        self._require_writable()
        if self._header.file_size != 0:
            _log.warning("Resizing non-empty file, data may be lost")

        header = self._header
        header.node_section_offset = BLOCK_ALIGNMENT
        header.vertices_section_offset = _align(
            BLOCK_ALIGNMENT + NODE_SIZE * nodes, BLOCK_ALIGNMENT
        )
        header.file_size = _align(
            header.vertices_section_offset + VERTEX_SIZE * verts, BLOCK_ALIGNMENT
        )
        header.node_capacity = nodes
        header.vertex_capacity = verts

        self._file.close()
        os.truncate(self.filename, header.file_size)
        self._file = open(self.filename, "r+b")
        self.write_header()

    def alloc_verts(self, count: int) -> int:
        header = self._header
        if header.vertex_count + count >= header.vertex_capacity:
            raise ValueError(
                f"Out of vertices : [{header.vertex_count}/{header.vertex_capacity} - {count}"
            )
        base = header.vertex_count + 1
        header.vertex_count += count
        return base

    def alloc_nodes(self, count: int) -> int:
        header = self._header
        if header.node_count + count >= header.node_capacity:
            raise ValueError(
                f"Out of nodes : [{header.node_count}/{header.node_capacity} - {count}"
            )
        base = header.node_count + 1
        header.node_count += count
        return base

    def alloc_nodes_with(self, vertex_per_node: Sequence[int]) -> List[PPCNode]:
        """Allocate consecutive nodes, each with its own run of vertices."""
        node_base = self.alloc_nodes(len(vertex_per_node))
        vert_base = self.alloc_verts(sum(vertex_per_node))
        nodes = []
        for node_id, count in enumerate(vertex_per_node, start=node_base):
            nodes.append(PPCNode(id=node_id, vert_offset=vert_base, vert_count=count))
            vert_base += count
        return nodes

    def node_count(self) -> int:
        return self._header.node_count

    def vertex_count(self) -> int:
        return self._header.vertex_count

    def root(self) -> int:
        return self._header.root

    def set_root(self, node_id: int) -> None:
        self._header.root = node_id
        self.write_header()

    def read_header(self) -> None:
        self._file.seek(0)
        data = self._file.read(HEADER_SIZE)
        if len(data) != HEADER_SIZE:
            raise ValueError(f"ppcloud {self.filename} has a truncated header")
        self._header = _Header.unpack(data)

    def write_header(self) -> None:
        self._require_writable()
        self._file.seek(0)
        self._file.write(self._header.pack())

    def _write_node_run(self, base: int, nodes: Sequence[PPCNode]) -> None:
        self._require_writable()
        self._file.seek(self._nodes_section + NODE_SIZE * base)
        self._file.write(b"".join(_pack_node(node) for node in nodes))

    def write_nodes(self, nodes: Iterable[PPCNode], base: Optional[int] = None) -> None:
        """Write nodes contiguously at ``base``, or each run of consecutive ids at its first id."""
        nodes = list(nodes)
        if base is not None:
            self._write_node_run(base, nodes)
            return
        if not nodes:
            return
        run = [nodes[0]]
        for prev, node in zip(nodes, nodes[1:]):
            if prev.id + 1 != node.id:
                self._write_node_run(run[0].id, run)
                run = []
            run.append(node)
        self._write_node_run(run[0].id, run)

    def write_verts(self, verts: Iterable[PLYVertex], base: int) -> None:
        self._require_writable()
        self._file.seek(self._vertices_section + VERTEX_SIZE * base)
        self._file.write(b"".join(_pack_vertex(vertex) for vertex in verts))

    def write_node_verts(self, node: PPCNode, verts: Sequence[PLYVertex]) -> None:
        if node.vert_count != len(verts):
            raise ValueError(
                f"node {node.id} holds {node.vert_count} vertices, got {len(verts)}"
            )
        self.write_verts(verts, node.vert_offset)

    def flush(self) -> None:
        self._require_writable()
        self.write_header()
        self._file.flush()

    def close(self) -> None:
        if self._file.closed:
            return
        try:
            if not self.readonly:
                self.flush()
        finally:
            self._file.close()

    def read_node(self, node_id: int) -> PPCNode:
        return self.read_nodes(node_id, 1)[0]

    def read_nodes(self, base: int, count: int) -> List[PPCNode]:
        """Read ``count`` nodes; slots past the end of the file come back as defaults."""
        self._file.seek(self._nodes_section + NODE_SIZE * base)
        data = self._file.read(NODE_SIZE * count)
        nodes = [_unpack_node(chunk[0]) for chunk in _NODE.iter_unpack(data[: len(data) // NODE_SIZE * NODE_SIZE]) and []]
        nodes = [
            _unpack_node(data[start : start + NODE_SIZE])
            for start in range(0, len(data) // NODE_SIZE * NODE_SIZE, NODE_SIZE)
        ]
        nodes.extend(PPCNode() for _ in range(count - len(nodes)))
        return nodes

    def read_verts(self, base: int, count: int) -> List[PLYVertex]:
        self._file.seek(self._vertices_section + VERTEX_SIZE * base)
        data = self._file.read(VERTEX_SIZE * count)
        if len(data) != VERTEX_SIZE * count:
            raise ValueError(
                f"ppcloud {self.filename}: cannot read {count} vertices at {base}"
            )
        return [
            _unpack_vertex(data[start : start + VERTEX_SIZE])
            for start in range(0, len(data), VERTEX_SIZE)
        ]

    def read_node_verts(self, node: PPCNode) -> List[PLYVertex]:
        return self.read_verts(node.vert_offset, node.vert_count)

    def __enter__(self) -> "PPCloud":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()