[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "beescrawl"
version = "0.1.0"
description = "Crawl-state records, scan scheduling policies and block addressing for btrfs deduplication"
requires-python = ">=3.10"
dependencies = []
keywords = ["btrfs", "deduplication", "crawler", "filesystem", "extents", "fiemap"]
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

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["beescrawl"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
