[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "daprapp"
version = "0.1.0"
description = "Application-side callback services for a Dapr sidecar: topic subscriptions, service invocation, input bindings, scheduled jobs and health checks, served over WSGI or a gRPC callback server."
requires-python = ">=3.10"
keywords = ["dapr", "pubsub", "cloudevents", "microservices", "wsgi", "grpc"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
    "Typing :: Typed",
]
dependencies = [
    "werkzeug",
    "grpcio",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["daprapp"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
