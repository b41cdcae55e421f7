"""Binary PLY reading and conversion into a quadtree-partitioned point cloud."""

from __future__ import annotations

import itertools
import logging
import os
import struct
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import BinaryIO, Dict, Iterator, List, Sequence

from .cloud import AABB, ConvertOptions, OpenMode, PLYVertex, PPCNode, PPCloud
from .progress import ProgressLog

_log = logging.getLogger(__name__)

CHILDREN = PPCNode.CHILDREN
_NO_CHILD = -1
_FLOAT = struct.Struct("<f")


class PropId(IntEnum):
    NONE = 0
    X = 1
    Y = 2
    Z = 3
    R = 4
    G = 5
    B = 6
    NX = 7
    NY = 8
    NZ = 9


class PropType(Enum):
    NONE = 0
    FLOAT = 1
    UCHAR = 2
    INT = 3

    @property
    def size(self) -> int:
        """Number of bytes the property occupies in a vertex record."""
        return _PROP_SIZE[self]


_PROP_SIZE = {PropType.NONE: 0, PropType.FLOAT: 4, PropType.UCHAR: 1, PropType.INT: 4}

_PROP_IDS = {
    "x": PropId.X,
    "y": PropId.Y,
    "z": PropId.Z,
    "red": PropId.R,
    "green": PropId.G,
    "blue": PropId.B,
    "nx": PropId.NX,
    "ny": PropId.NY,
    "nz": PropId.NZ,
}

_PROP_TYPES = {
    "float": PropType.FLOAT,
    "uchar": PropType.UCHAR,
    "char": PropType.UCHAR,
    "int": PropType.INT,
}


@dataclass(frozen=True)
class Prop:
    id: PropId
    type: PropType


@dataclass
class PLYHeader:
    num_cols: int = 0
    props: List[Prop] = field(default_factory=list)

    def __str__(self) -> str:
        return f"=== PLY HEADER ===\nnum-cols -{self.num_cols}\n"


def _word(words: Sequence[str], index: int) -> str:
    return words[index] if index < len(words) else ""


def _count(words: Sequence[str], index: int) -> int:
    text = _word(words, index)
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"Expecting a count, got {text!r}") from None


def parse_header(stream: BinaryIO) -> PLYHeader:
    """Read header lines up to ``end_header``, leaving the stream at the vertex data."""
    header = PLYHeader()
    for raw in iter(stream.readline, b""):
        words = raw.decode("latin-1").split()
        kind = _word(words, 0)
        if kind == "format":
            if (_word(words, 1), _word(words, 2)) != ("binary_little_endian", "1.0"):
                raise ValueError("Expecting binary_little endian version 1")
        elif kind == "obj_info":
            if _word(words, 1) == "num_cols":
                header.num_cols = _count(words, 2)
        elif kind == "element":
            if _word(words, 1) == "vertex":
                header.num_cols = _count(words, 2)
        elif kind == "property":
            type_name, prop_name = _word(words, 1), _word(words, 2)
            prop_id = _PROP_IDS.get(prop_name, PropId.NONE)
            prop_type = _PROP_TYPES.get(type_name, PropType.NONE)
            if prop_id is PropId.NONE:
                _log.warning("Unknown property %s", prop_name)
            if prop_type is PropType.NONE:
                raise ValueError(f"Unknown type {type_name} {prop_name}")
            header.props.append(Prop(prop_id, prop_type))
        elif kind == "end_header":
            break
    _log.info("%s", header)
    return header


class _VertexLayout:
    """Byte offsets of the known properties inside one vertex record."""

    def __init__(self, header: PLYHeader) -> None:
        types: Dict[PropId, PropType] = {}
        self.offsets: Dict[PropId, int] = {}
        self.record_size = 0
        for prop in header.props:
            types[prop.id] = prop.type
            self.offsets[prop.id] = self.record_size
            self.record_size += prop.type.size

        def has(ids: Sequence[PropId], prop_type: PropType) -> bool:
            return all(types.get(prop_id, PropType.NONE) is prop_type for prop_id in ids)

        self.pos_ids = (PropId.X, PropId.Y, PropId.Z)
        self.color_ids = (PropId.R, PropId.G, PropId.B)
        self.normal_ids = (PropId.NX, PropId.NY, PropId.NZ)
        self.has_pos = has(self.pos_ids, PropType.FLOAT)
        self.has_color = has(self.color_ids, PropType.UCHAR)
        self.has_normal = has(self.normal_ids, PropType.FLOAT)
        if not self.has_pos:
            raise ValueError("Expecting pos and color")

    def _floats(self, data: bytes, base: int, ids: Sequence[PropId]):
        return tuple(_FLOAT.unpack_from(data, base + self.offsets[i])[0] for i in ids)

    def decode(self, data: bytes, base: int) -> PLYVertex:
        vertex = PLYVertex(pos=self._floats(data, base, self.pos_ids))
        if self.has_color:
            vertex.color = tuple(data[base + self.offsets[i]] for i in self.color_ids)
        if self.has_normal:
            vertex.normal = self._floats(data, base, self.normal_ids)
        return vertex

    def chunks(self, stream: BinaryIO, chunk_size: int) -> Iterator[List[PLYVertex]]:
        """Yield decoded chunks until a short read marks the end of the stream."""
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        chunk_bytes = chunk_size * self.record_size
        while True:
            data = stream.read(chunk_bytes) or b""
            whole = len(data) // self.record_size * self.record_size
            yield [self.decode(data, base) for base in range(0, whole, self.record_size)]
            if len(data) < chunk_bytes:
                return


def parse_vertices(
    stream: BinaryIO, header: PLYHeader, chunk_size: int, max_chunks: int
) -> List[PLYVertex]:
    """Decode up to ``max_chunks`` chunks of ``chunk_size`` vertex records."""
    layout = _VertexLayout(header)
    chunks = itertools.islice(layout.chunks(stream, chunk_size), max_chunks)
    return list(itertools.chain.from_iterable(chunks))


def _half(delta: float, size: float) -> int:
    if size == 0:
        return 1 if delta > 0 else 0
    return 1 if 2.0 * delta / size >= 1.0 else 0


def quadrant_index(aabb: AABB, pos: Sequence[float]) -> int:
    """Index of the XY quadrant of ``aabb`` that holds ``pos``; outside points are clamped."""
    size = aabb.size()
    x = _half(pos[0] - aabb.min[0], size[0])
    y = _half(pos[1] - aabb.min[1], size[1])
    return x + 2 * y


def _divceil(value: int, divisor: int) -> int:
    return -(-value // divisor)


def _partition_in_memory(
    node_id: int,
    verts: List[PLYVertex],
    my_verts: List[PLYVertex],
    nodes: List[PPCNode],
    options: ConvertOptions,
) -> None:
    node = nodes[node_id]
    if node.vert_count <= options.verts_per_node:
        verts[node.vert_offset : node.vert_offset + len(my_verts)] = my_verts
        node.children = [_NO_CHILD] * CHILDREN
        return

    child_verts: List[List[PLYVertex]] = [[] for _ in range(CHILDREN)]
    child_aabbs = [AABB() for _ in range(CHILDREN)]
    for vertex in my_verts[: node.vert_count]:
        index = quadrant_index(node.aabb, vertex.pos)
        child_verts[index].append(vertex)
        child_aabbs[index].update(vertex.pos)

    node.has_children = True
    downsampled: List[PLYVertex] = []
    offset = node.vert_offset
    for quadrant, (group, child_aabb) in enumerate(zip(child_verts, child_aabbs)):
        if not group:
            node.children[quadrant] = _NO_CHILD
            continue
        child_id = len(nodes)
        node.children[quadrant] = child_id
        child = PPCNode(
            id=child_id, vert_count=len(group), aabb=child_aabb, vert_offset=offset
        )
        nodes.append(child)
        _partition_in_memory(child_id, verts, group, nodes, options)
        start = child.vert_offset
        downsampled.extend(verts[start : start + child.vert_count : CHILDREN])
        offset += len(group)

    node.vert_offset = len(verts)
    node.vert_count = len(downsampled)
    verts.extend(downsampled)


def _partition_resident(
    cloud: PPCloud, node: PPCNode, options: ConvertOptions
) -> PPCNode:
    verts = cloud.read_node_verts(node)
    local_root = replace(
        node,
        id=0,
        vert_offset=0,
        aabb=AABB(node.aabb.min, node.aabb.max),
        children=list(node.children),
    )
    nodes = [local_root]
    _partition_in_memory(0, verts, verts, nodes, options)

    # Leaf data already lives in the node's own range; only inner nodes need space.
    inner_count = sum(n.vert_count for n in nodes if n.has_children)
    node_base = cloud.alloc_nodes(len(nodes) - 1)
    vert_base = cloud.alloc_verts(inner_count)

    for position, local in enumerate(nodes):
        local.id = node.id if position == 0 else node_base + local.id - 1
        if local.has_children:
            local.vert_offset = vert_base + local.vert_offset - node.vert_count
            local.children = [
                0 if child == _NO_CHILD else node_base + child - 1
                for child in local.children
            ]
        else:
            local.vert_offset += node.vert_offset
            local.children = [0] * CHILDREN

    cloud.write_nodes([nodes[0]], node.id)
    cloud.write_nodes(nodes[1:], node_base)
    cloud.write_verts(verts[: node.vert_count], node.vert_offset)
    cloud.write_verts(verts[node.vert_count :], vert_base)
    return nodes[0]


def _partition_streaming(
    cloud: PPCloud, node: PPCNode, log: ProgressLog, options: ConvertOptions
) -> PPCNode:
    node = replace(node, children=list(node.children))

    def each_vertex() -> Iterator[tuple]:
        for start in range(0, node.vert_count, options.read_buffer):
            count = min(options.read_buffer, node.vert_count - start)
            for vertex in cloud.read_verts(node.vert_offset + start, count):
                yield quadrant_index(node.aabb, vertex.pos), vertex

    child_aabbs = [AABB() for _ in range(CHILDREN)]
    child_counts = [0] * CHILDREN
    for quadrant, vertex in each_vertex():
        child_aabbs[quadrant].update(vertex.pos)
        child_counts[quadrant] += 1

    child_nodes = cloud.alloc_nodes_with([0] * CHILDREN)
    write_offsets = []
    offset = node.vert_offset
    for quadrant, child in enumerate(child_nodes):
        node.children[quadrant] = child.id
        child.aabb = child_aabbs[quadrant]
        child.vert_count = child_counts[quadrant]
        child.vert_offset = offset
        write_offsets.append(offset)
        offset += child_counts[quadrant]

    pending: List[List[PLYVertex]] = [[] for _ in range(CHILDREN)]
    for quadrant, vertex in each_vertex():
        buffer = pending[quadrant]
        buffer.append(vertex)
        if len(buffer) >= options.write_buffer:
            cloud.write_verts(buffer, write_offsets[quadrant])
            write_offsets[quadrant] += len(buffer)
            buffer.clear()
    for quadrant, buffer in enumerate(pending):
        cloud.write_verts(buffer, write_offsets[quadrant])

    cloud.write_nodes([node], node.id)
    cloud.write_nodes(child_nodes, child_nodes[0].id)

    reserved = 0
    for quadrant in range(CHILDREN):
        child_nodes[quadrant] = _partition_node(cloud, child_nodes[quadrant], log, options)
        reserved += _divceil(child_nodes[quadrant].vert_count, CHILDREN)

    vert_base = cloud.alloc_verts(reserved)
    downsampled: List[PLYVertex] = []
    for child in child_nodes:
        downsampled.extend(cloud.read_node_verts(child)[::CHILDREN])

    node.vert_offset = vert_base
    node.vert_count = len(downsampled)
    cloud.write_nodes([node], node.id)
    cloud.write_verts(downsampled, node.vert_offset)
    return node


def _partition_node(
    cloud: PPCloud, node: PPCNode, log: ProgressLog, options: ConvertOptions
) -> PPCNode:
    """Split ``node`` into quadrants on disk; returns the node as it was rewritten."""
    if node.vert_count < options.verts_per_node:
        return node
    log.incr_target(1)
    if node.vert_count <= options.max_verts_in_memory:
        node = _partition_resident(cloud, node, options)
    else:
        node = _partition_streaming(cloud, node, log, options)
    log.update()
    return node


def partition_into_quadtree(cloud: PPCloud, options: ConvertOptions) -> None:
    """Partition the cloud's root node, and recursively its children, into a quadtree."""
    log = ProgressLog("Building quadtree", 0)
    _partition_node(cloud, cloud.read_nodes(cloud.root(), 1)[0], log, options)


def convert_point_cloud(
    dst: str, src: str, aabb: AABB, options: ConvertOptions
) -> None:
    """Load a binary PLY file into a new point cloud file and build its quadtree."""
    with open(src, "rb") as fin:
        header = parse_header(fin)
        layout = _VertexLayout(header)

        vert_count = header.num_cols
        vert_capacity = int(1.5 * header.num_cols)
        node_capacity = 20 * header.num_cols // options.verts_per_node

        with PPCloud(dst, OpenMode.IN | OpenMode.OUT | OpenMode.CREATE) as pcloud:
            pcloud.reserve(node_capacity, vert_capacity)
            progress = ProgressLog("Loading ply", os.path.getsize(src))

            node = pcloud.alloc_nodes_with([vert_count])[0]
            node.aabb = aabb
            pcloud.write_nodes([node], node.id)
            pcloud.set_root(node.id)

            node.vert_count = 0
            for vertices in layout.chunks(fin, options.read_buffer):
                pcloud.write_verts(vertices, node.vert_offset + node.vert_count)
                node.vert_count += len(vertices)
                progress.update(fin.tell())
            pcloud.write_nodes([node], node.id)
            _log.info("Point cloud has %d vertices", node.vert_count)

            partition_into_quadtree(pcloud, options)