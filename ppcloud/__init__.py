"""Persistent point cloud files, binary PLY import and quadtree partitioning."""

__version__ = "0.1.0"
__all__ = ["cloud", "mpc_queue", "ply_loader", "progress"]