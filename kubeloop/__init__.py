"""kubeloop - declarative workload orchestration controller."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kubeloop")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
