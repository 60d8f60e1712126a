[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "grafsy"
version = "2.0.0"
description = "A light local proxy for Graphite metrics that buffers, aggregates, filters and forwards them to one or more carbon servers"
requires-python = ">=3.11"
dependencies = []
keywords = ["graphite", "carbon", "metrics", "proxy", "monitoring", "aggregation"]
classifiers = [
    "Development Status :: 5 - Production/Stable",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
grafsy = "grafsy.cli:main"
grafsy-client = "grafsy.cli:client_main"

[tool.hatch.build.targets.wheel]
packages = ["grafsy"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
