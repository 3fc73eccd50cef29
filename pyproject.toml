[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kubegateway"
version = "0.1.0"
description = "Building blocks for a multi-cluster API gateway: request filters, impersonation, proxy forwarding, metrics, admission and a work queue"
requires-python = ">=3.10"
dependencies = []
keywords = ["gateway", "proxy", "impersonation", "admission", "workqueue", "metrics"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kubegateway"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
