[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ofuton"
version = "2025.8.1"
description = "A small S3-compatible object storage server backed by a local directory and SQLite"
requires-python = ">=3.11"
keywords = ["s3", "object-storage", "http-server", "aiohttp", "multipart-upload", "sqlite"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "aiohttp>=3.9",
    "tqdm>=4.66",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
ofuton = "ofuton.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ofuton"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
