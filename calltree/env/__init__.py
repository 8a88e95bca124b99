"""Utilities to get information about the runtime environment."""

from calltree.env._runtime_env import get_runtime_environment

__all__ = ["get_runtime_environment"]
