[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nth-handler"
version = "0.1.0"
description = "React to cloud instance interruptions on Kubernetes nodes: cordon, drain, label, taint, notify and count."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kubernetes",
    "node",
    "drain",
    "cordon",
    "taint",
    "spot",
    "interruption",
    "webhook",
    "metrics",
    "prometheus",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nth_handler"]

[tool.hatch.build.targets.sdist]
include = ["nth_handler", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
check_untyped_defs = true
