[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "peerpressure"
version = "0.1.0"
description = "BitTorrent building blocks: rarest-first piece picking, progress display, HTTP seeds, local service discovery and magnet links"
requires-python = ">=3.10"
dependencies = []
keywords = ["bittorrent", "magnet", "webseed", "lsd", "p2p"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["peerpressure"]

[tool.pytest.ini_options]
addopts = "-ra"
