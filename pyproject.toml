[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cgtproxy"
version = "0.3.2"
description = "A transparent network proxy manager that routes traffic by cgroup using nftables TPROXY rules."
requires-python = ">=3.11"
keywords = ["tproxy", "nftables", "cgroup", "proxy", "firewall", "linux"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Firewalls",
]
dependencies = [
    "pyyaml",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
cgtproxy = "cgtproxy.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["cgtproxy"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
