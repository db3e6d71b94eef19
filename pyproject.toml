[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "csiaddons"
version = "0.1.0"
description = "Sidecar and helpers for CSI-Addons operations: reclaim space, network fencing and volume replication"
requires-python = ">=3.10"
keywords = ["csi", "kubernetes", "storage", "grpc", "replication", "sidecar"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]
dependencies = [
    "grpcio",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
csi-addons-sidecar = "csiaddons.sidecar:main"

[tool.hatch.build.targets.wheel]
packages = ["csiaddons"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
