[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "batchkit"
version = "0.1.0"
description = "Building blocks for batch changes across many repositories: repository resolution, workspace discovery, task building and progress reporting."
requires-python = ">=3.10"
dependencies = []
keywords = ["batch changes", "code search", "graphql", "workspaces", "diffstat", "json lines"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Version Control",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["batchkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
