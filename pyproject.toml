[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "weensy"
version = "0.1.0"
description = "A simulated teaching kernel: x86-64 page tables, a page allocator, process setup, fork and exit"
requires-python = ">=3.10"
dependencies = []
keywords = ["kernel", "operating-system", "page-table", "virtual-memory", "x86-64", "elf", "simulation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System Kernels",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["weensy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
