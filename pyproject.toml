[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cnimeta"
version = "0.1.0"
description = "Chained CNI meta plugins: port mapping, bandwidth shaping, flannel delegation and interface tuning"
requires-python = ">=3.12"
dependencies = []
keywords = ["cni", "container", "networking", "iptables", "portmap", "bandwidth", "flannel", "tuning"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cnimeta-sample = "cnimeta.sample:main"
cnimeta-portmap = "cnimeta.portmap:main"
cnimeta-bandwidth = "cnimeta.bandwidth:main"
cnimeta-flannel = "cnimeta.flannel:main"
cnimeta-tuning = "cnimeta.tuning:main"

[tool.hatch.build.targets.wheel]
packages = ["cnimeta"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py312"

[tool.mypy]
python_version = "3.12"
warn_unused_ignores = true
