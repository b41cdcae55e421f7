import os

import pytest

from ppcloud.cloud import (
    AABB,
    NodeMode,
    OpenMode,
    PLYVertex,
    PPCNode,
    PPCloud,
)


@pytest.fixture
def cloud_path(tmp_path):
    return str(tmp_path / "test_file0.pc")


def test_alloc_nodes_unique_ids_and_vertices(cloud_path):
    with PPCloud(cloud_path, OpenMode.OUT) as pcloud:
        pcloud.reserve(17, 129)
        vertex_per_node = [8] * 8
        id_set = set()
        vert_set = set()
        for _ in range(2):
            nodes = pcloud.alloc_nodes_with(vertex_per_node)
            for node, count in zip(nodes, vertex_per_node):
                assert node.id not in id_set
                assert node.vert_count == count
                id_set.add(node.id)
                for j in range(count):
                    assert node.vert_offset + j not in vert_set
                    vert_set.add(node.vert_offset + j)
        assert len(id_set) == 16
        assert len(vert_set) == 128


def test_write_nodes_round_trip(cloud_path):
    vertex_per_node = [8] * 8
    with PPCloud(cloud_path, OpenMode.OUT) as pcloud:
        pcloud.reserve(16, 128)
        nodes = pcloud.alloc_nodes_with(vertex_per_node)
        pcloud.write_nodes(nodes)

    offset = 2
    with PPCloud(cloud_path, OpenMode.IN) as pcloud2:
        nodes2 = pcloud2.read_nodes(nodes[offset].id, len(vertex_per_node) - offset)

    assert len(nodes) == len(nodes2) + offset
    for original, loaded in zip(nodes[offset:], nodes2):
        assert original.id == loaded.id
        assert original.vert_offset == loaded.vert_offset
        assert original.mode == loaded.mode
        assert original.children == loaded.children


def test_alloc_nodes_out_of_capacity(cloud_path):
    with PPCloud(cloud_path, OpenMode.OUT) as pcloud:
        pcloud.reserve(4, 100)
        pcloud.alloc_nodes(3)
        with pytest.raises(ValueError, match="Out of nodes"):
            pcloud.alloc_nodes(1)


def test_alloc_verts_out_of_capacity(cloud_path):
    with PPCloud(cloud_path, OpenMode.OUT) as pcloud:
        pcloud.reserve(4, 10)
        with pytest.raises(ValueError, match="Out of vertices"):
            pcloud.alloc_verts(10)


def test_allocation_starts_at_one(cloud_path):
    with PPCloud(cloud_path, OpenMode.OUT) as pcloud:
        pcloud.reserve(10, 100)
        assert pcloud.alloc_nodes(2) == 1
        assert pcloud.alloc_nodes(1) == 3
        assert pcloud.node_count() == 3
        assert pcloud.alloc_verts(5) == 1
        assert pcloud.vertex_count() == 5


def test_reserve_sizes_file_to_block_alignment(cloud_path):
    with PPCloud(cloud_path, OpenMode.OUT) as pcloud:
        pcloud.reserve(16, 128)
    size = os.path.getsize(cloud_path)
    assert size % 1024 == 0
    assert size >= 1024 + 16 * 88 + 128 * 28


def test_verts_round_trip_and_header_persists(cloud_path):
    verts = [
        PLYVertex(pos=(0.5, 1.5, 2.0), normal=(0.0, 1.0, 0.0), color=(255, 0, 7)),
        PLYVertex(pos=(-1.0, 4.25, 8.0), normal=(1.0, 0.0, 0.0), color=(1, 2, 3)),
    ]
    with PPCloud(cloud_path, OpenMode.IN | OpenMode.OUT | OpenMode.CREATE) as pcloud:
        pcloud.reserve(10, 10)
        node = pcloud.alloc_nodes_with([2])[0]
        node.aabb = AABB((0.0, 0.0, 0.0), (4.0, 4.0, 1.0))
        node.mode = NodeMode.YZ
        node.has_children = True
        node.children = [5, 6, 0, 7]
        pcloud.write_nodes([node], node.id)
        pcloud.write_node_verts(node, verts)
        pcloud.set_root(node.id)

    with PPCloud(cloud_path, OpenMode.IN) as pcloud:
        assert pcloud.root() == node.id
        assert pcloud.node_count() == 1
        assert pcloud.vertex_count() == 2
        loaded = pcloud.read_node(pcloud.root())
        assert loaded == node
        assert pcloud.read_node_verts(loaded) == verts


def test_write_nodes_groups_by_id(cloud_path):
    with PPCloud(cloud_path, OpenMode.IN | OpenMode.OUT | OpenMode.CREATE) as pcloud:
        pcloud.reserve(10, 10)
        nodes = [PPCNode(id=1, vert_count=11), PPCNode(id=2, vert_count=12), PPCNode(id=5, vert_count=15)]
        pcloud.write_nodes(nodes)
        assert [n.vert_count for n in pcloud.read_nodes(1, 2)] == [11, 12]
        assert pcloud.read_node(5).vert_count == 15


def test_write_node_verts_count_mismatch(cloud_path):
    with PPCloud(cloud_path, OpenMode.OUT) as pcloud:
        pcloud.reserve(4, 10)
        node = pcloud.alloc_nodes_with([3])[0]
        with pytest.raises(ValueError):
            pcloud.write_node_verts(node, [PLYVertex()])


def test_readonly_cloud_rejects_writes(cloud_path):
    with PPCloud(cloud_path, OpenMode.OUT) as pcloud:
        pcloud.reserve(4, 10)
    with PPCloud(cloud_path, OpenMode.IN) as pcloud:
        with pytest.raises(ValueError):
            pcloud.write_header()


def test_missing_file_raises(tmp_path):
    with pytest.raises(ValueError, match="Cannot load ppcloud"):
        PPCloud(str(tmp_path / "missing.pc"), OpenMode.IN)


def test_aabb_update_size_inside():
    box = AABB()
    box.update((1.0, 2.0, 3.0))
    assert box.inside((1.0, 2.0, 3.0))
    box.update((3.0, 0.0, 4.0))
    assert box.min == (1.0, 0.0, 3.0)
    assert box.max == (3.0, 2.0, 4.0)
    assert box.size() == (2.0, 2.0, 1.0)
    assert not box.inside((5.0, 1.0, 3.5))


def test_empty_aabb_contains_nothing():
    assert not AABB().inside((0.0, 0.0, 0.0))