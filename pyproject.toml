[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "quotaguard"
version = "0.1.0"
description = "Descriptor-based rate limiting: YAML limit configuration, cache keys, limit decisions and a memcached backend"
requires-python = ">=3.10"
keywords = ["rate limiting", "quota", "memcached", "descriptors", "throttling"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
quotaguard-config-check = "quotaguard.config_check:main"

[tool.hatch.build.targets.wheel]
packages = ["quotaguard"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
