[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ppcloud"
version = "0.1.0"
description = "Persistent point clouds on disk: binary PLY import and quadtree level-of-detail partitioning"
requires-python = ">=3.10"
dependencies = []
keywords = ["point cloud", "ply", "quadtree", "level of detail", "lidar", "visualization"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Visualization",
    "Topic :: File Formats",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ppcloud"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
