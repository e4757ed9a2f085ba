[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wbipam"
version = "0.1.0"
description = "Cluster-wide IP address management: IP pools, node slices, overlapping-range reservations and an orphaned-IP reconciler"
requires-python = ">=3.10"
keywords = ["ipam", "kubernetes", "cni", "ip-pool", "networking", "reconciler"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]
dependencies = [
    "semver",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["wbipam"]

[tool.hatch.build.targets.sdist]
include = ["wbipam", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"
