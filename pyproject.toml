[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "axionvera-node"
version = "0.1.0"
description = "Building blocks for a network node: metrics, rate limiting, a hashed state store, Kademlia peers, graceful shutdown, profiling and Ed25519 signing."
requires-python = ">=3.10"
keywords = [
    "network-node",
    "kademlia",
    "rate-limiting",
    "state-store",
    "ed25519",
    "signing",
    "metrics",
    "prometheus",
    "asyncio",
]
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
    "Framework :: AsyncIO",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "pynacl>=1.5",
    "redis>=4.2",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
]

[tool.hatch.build.targets.wheel]
packages = ["axionvera_node"]

[tool.hatch.build.targets.sdist]
include = ["axionvera_node", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
