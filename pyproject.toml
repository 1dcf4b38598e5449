[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "promptalchemy"
version = "0.1.0"
description = "SQLite storage for generated prompts with metadata and embedding search, relevance decay and usage tracking"
requires-python = ">=3.10"
dependencies = []
keywords = ["prompts", "llm", "embeddings", "semantic-search", "sqlite"]
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
    "Topic :: Database",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["promptalchemy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
