[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cpuminer"
version = "0.1.0"
description = "A multi-threaded CPU miner for cpunet that speaks the Stratum protocol"
requires-python = ">=3.10"
dependencies = []
keywords = ["stratum", "mining", "sha256", "midstate", "cpunet"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[project.scripts]
cpuminer = "cpuminer.main:main"

[tool.hatch.build.targets.wheel]
packages = ["cpuminer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
