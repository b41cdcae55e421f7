# ppcloud

`ppcloud` stores large point clouds in one binary file. It can also split a cloud
into a quadtree. Each inner node of the quadtree holds a downsampled
level-of-detail set of vertices.

The package has four modules:

- **`ppcloud.cloud`** holds the file format and its data types.
  - `PPCloud` is the persistent point cloud file. It has a header, a node
    section and a vertex section.
  - `PPCNode` is a node. It has an axis-aligned bounding box (`AABB`), a vertex
    range (`vert_offset`, `vert_count`) and four child ids.
  - `PLYVertex` holds a position, a normal and an RGB colour.
  - `ConvertOptions` holds the settings for conversion and partitioning.
- **`ppcloud.ply_loader`** does the PLY work.
  - `parse_header` and `parse_vertices` read binary little-endian PLY files.
  - `convert_point_cloud` imports a PLY file into a new `PPCloud`.
  - `partition_into_quadtree` builds the quadtree.
  - `quadrant_index` gives the XY quadrant of a box that a point falls in.
- **`ppcloud.progress`** has `ProgressLog`, which prints lines of the form
  `[percent] prefix - Time elapsed seconds`. It prints to stdout or to a
  stream you pass in. The module also has `format_vec`, which renders
  `(x,y,z)`.
- **`ppcloud.mpc_queue`** has `MPCQueue`, a bounded ring-buffer queue for
  several producers and consumers built on threading semaphores.

## Installation

```
pip install .
```

The package has no dependencies beyond the standard library.

## Converting a PLY file

```python
from ppcloud.cloud import AABB, ConvertOptions
from ppcloud.ply_loader import convert_point_cloud

bounds = AABB(min=(0.0, 0.0, 0.0), max=(100.0, 100.0, 10.0))
options = ConvertOptions(verts_per_node=16 * 1024)
convert_point_cloud("scan.pc", "scan.ply", bounds, options)
```

The input PLY file has these requirements:

- It must be `binary_little_endian 1.0`.
- It must declare float `x`, `y` and `z` properties. If it does not,
  `ValueError` is raised.
- `red`/`green`/`blue` are read when all three are `uchar` or `char`.
- `nx`/`ny`/`nz` are read when all three are `float`.
- A property of an unknown type raises `ValueError`.
- A property with an unknown name is logged and its bytes are skipped.

The vertex count comes from `element vertex N`, or from `obj_info num_cols N`.
From that count, the output file reserves space for 1.5 × N vertices and
20 × N / `verts_per_node` nodes. If partitioning needs more than that,
allocation raises `ValueError`.

### How partitioning works

`partition_into_quadtree` starts at the cloud's root node.

- A node with fewer than `verts_per_node` vertices is left as it is.
- Otherwise the node's vertices are split into four quadrants in the XY plane.
- A node with at most `max_verts_in_memory` vertices is partitioned in memory,
  all at once.
- A larger node is streamed from disk in blocks of `read_buffer` vertices and
  written back in blocks of `write_buffer`.
- After the split, an inner node keeps every fourth vertex of each child as its
  own level-of-detail vertices.

`ConvertOptions` also has `process_workers` and `lods` fields. Nothing in the
package reads them yet.

## Reading a cloud

```python
from ppcloud.cloud import OpenMode, PPCloud

with PPCloud("scan.pc", OpenMode.IN) as cloud:
    root = cloud.read_node(cloud.root())
    print(root.aabb, root.vert_count)
    for child_id in root.children:
        if child_id:
            child = cloud.read_node(child_id)
            vertices = cloud.read_node_verts(child)
```

In a partitioned cloud, child id `0` means the child is absent.

- `read_nodes` returns default nodes for slots past the end of the file.
- `read_verts` raises `ValueError` on a short read.
- A cloud opened with `OpenMode.IN` alone is read-only. Writing to it raises
  `ValueError`.

## Building a cloud by hand

```python
from ppcloud.cloud import OpenMode, PPCloud

with PPCloud("points.pc", OpenMode.IN | OpenMode.OUT | OpenMode.CREATE) as cloud:
    cloud.reserve(100, 1000)
    nodes = cloud.alloc_nodes_with([8, 8])
    cloud.write_nodes(nodes)
```

Reserving space:

- `reserve` lays out the node section and the vertex section on 1024-byte
  boundaries and sizes the file to fit.
- Node ids and vertex offsets are handed out from 1 upward.
- An allocation that would reach or pass the reserved capacity raises
  `ValueError`.

Writing nodes:

- `write_nodes(nodes)` writes each run of consecutive ids at its first id.
- `write_nodes(nodes, base)` writes all the nodes in one block at `base`.

Closing a writable cloud writes the header and flushes the file. Leaving the
`with` block closes it.

## Using the queue

```python
import threading
from ppcloud.mpc_queue import MPCQueue

queue = MPCQueue(4)
received = []
consumer = threading.Thread(target=lambda: received.extend(queue))
consumer.start()
for item in range(3):
    queue.send(item)
queue.signal_done()
consumer.join()
```

The queue behaves as follows:

- Iterating the queue yields items until `signal_done` is called.
- `block_recv` returns one item. It raises `QueueClosedError` once the queue
  is closed.
- `send` on a closed queue raises `QueueClosedError`.
- `acquire_send` and `acquire_block_recv` return guards that work as context
  managers. Releasing a guard passes its slot on to the other side.

## What it does not do

`ppcloud` only stores and partitions point clouds. It has no viewer and does no
rendering. It has no command-line program. It reads only binary little-endian
PLY input.

## Running the tests

```
pip install .[test]
pytest
```