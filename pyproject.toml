[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "walletsvc"
version = "0.1.0"
description = "Wallet service for a paper-trading platform: balances, transaction records and rollbacks, served over gRPC with SQLite storage."
requires-python = ">=3.10"
keywords = ["wallet", "ledger", "transactions", "grpc", "sqlite", "paper-trading"]
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
    "Topic :: Office/Business :: Financial :: Accounting",
]
dependencies = [
    "grpcio",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
walletsvc = "walletsvc.server:main"

[tool.hatch.build.targets.wheel]
packages = ["walletsvc"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
