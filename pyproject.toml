[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "limaguest"
version = "0.1.0"
description = "Guest agent and helper utilities for Lima-style Linux virtual machines"
requires-python = ">=3.10"
dependencies = []
keywords = ["virtual-machine", "guest-agent", "port-forwarding", "cloud-init", "linux"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
lima-guestagent = "limaguest.daemon:main"

[tool.hatch.build.targets.wheel]
packages = ["limaguest"]

[tool.pytest.ini_options]
addopts = "-ra"
