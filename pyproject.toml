[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cankit"
version = "0.1.0"
description = "CAN bus utilities: frame length and bus load calculation, broadcast manager text protocol and full-duplex frame testing"
requires-python = ">=3.10"
dependencies = []
keywords = ["can", "can-fd", "socketcan", "busload", "bcm", "automotive"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: System :: Networking",
    "Topic :: Utilities",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cankit-busload = "cankit.busload:main"
cankit-fdtest = "cankit.fdtest:main"

[tool.hatch.build.targets.wheel]
packages = ["cankit"]

[tool.pytest.ini_options]
addopts = "-ra"
