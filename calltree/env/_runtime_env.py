"""Environment information."""

import functools
import logging
import platform

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=1)
def get_runtime_environment() -> dict:
    """Get information about the environment."""
    # Lazy import to avoid circular imports
    from calltree import __version__

    return {
        "sdk_version": __version__,
        "library": "calltree",
        "platform": platform.platform(),
        "runtime": "python",
        "py_implementation": platform.python_implementation(),
        "runtime_version": platform.python_version(),
    }
