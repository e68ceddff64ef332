from .core import SwapCore, build_core
from .logging import JsonFormatter, setup_logger
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "JsonFormatter",
    "SwapCore",
    "build_core",
    "setup_logger",
]
