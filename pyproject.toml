[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "buildxkit"
version = "0.1.0"
description = "BuildKit builder drivers, Kubernetes manifests and build option helpers"
requires-python = ">=3.10"
keywords = ["buildkit", "buildx", "docker", "kubernetes", "containers", "builder"]
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
    "Topic :: Software Development :: Build Tools",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["buildxkit"]

[tool.pytest.ini_options]
addopts = "-ra"
