[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "covtrace"
version = "0.1.0"
description = "Coverage trace maps and test-tracing state machines for collecting line coverage"
requires-python = ">=3.10"
dependencies = []
keywords = ["coverage", "testing", "tracing", "ptrace", "instrumentation", "breakpoints"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
    "Topic :: Software Development :: Quality Assurance",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["covtrace"]

[tool.pytest.ini_options]
addopts = "-ra"
