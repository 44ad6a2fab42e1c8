[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "xllm_dispatch"
version = "0.1.0"
description = "Instance registry, prefill/decode dispatch policy and response routing for disaggregated LLM serving."
requires-python = ">=3.10"
dependencies = []
keywords = ["llm", "serving", "dispatch", "prefill", "decode", "load-balancing", "registry"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["xllm_dispatch"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
