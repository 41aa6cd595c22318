[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dnsroute"
version = "0.1.0"
description = "Composable DNS resolvers, upstream clients, blocklists and caches for routing DNS queries"
requires-python = ">=3.10"
keywords = [
    "dns",
    "resolver",
    "blocklist",
    "cache",
    "dns-over-https",
    "dns-over-tls",
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
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: System :: Networking",
]
dependencies = [
    "dnspython>=2.4",
    "httpx>=0.25",
    "redis>=5.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[tool.hatch.build.targets.wheel]
packages = ["dnsroute"]

[tool.hatch.build.targets.sdist]
include = ["dnsroute", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
