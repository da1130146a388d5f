[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "svckit"
version = "0.1.0"
description = "Building blocks for HTTP services: WSGI server with health checks, JWT auth, access logging, database settings and GraphQL schema hooks."
requires-python = ">=3.10"
keywords = [
    "wsgi",
    "middleware",
    "jwt",
    "oidc",
    "jwks",
    "health-check",
    "access-log",
    "graphql",
    "cockroachdb",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Server",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "werkzeug>=3.0",
    "pyjwt[crypto]>=2.8",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "cryptography>=41.0",
    "pyjwt>=2.8",
    "werkzeug>=3.0",
]

[tool.hatch.build.targets.wheel]
packages = ["svckit"]

[tool.hatch.build.targets.sdist]
include = ["svckit", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
