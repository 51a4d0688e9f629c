[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "infinitive"
version = "0.1.0"
description = "Monitor and control a communicating HVAC system over its serial bus, with an HTTP/WebSocket API and MQTT integration"
requires-python = ">=3.10"
keywords = ["hvac", "thermostat", "serial", "mqtt", "home-assistant", "home-automation"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Home Automation",
]
dependencies = [
    "pyserial",
    "paho-mqtt",
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
infinitive = "infinitive.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["infinitive"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
