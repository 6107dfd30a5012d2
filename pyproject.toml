[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "demand-proxy"
version = "0.2.1"
description = "Stratum V1 mining proxy components: configuration, downstream ingress, per-miner statistics and a JSON status API"
requires-python = ">=3.11"
keywords = ["stratum", "mining", "proxy", "sv1", "hashrate", "asyncio"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Topic :: System :: Networking",
]
dependencies = [
    "aiohttp>=3.9",
    "psutil>=5.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["demand_proxy"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
