[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sori"
version = "0.1.0"
description = "Package data directories as OCI artifacts in a local OCI layout store, track them in a versioned volume collection, and push them to registries."
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = ["oci", "oci-layout", "artifact", "volume", "registry", "tarball", "data-packaging"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Packaging",
    "Topic :: System :: Archiving",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["sori"]

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
