"""Configuration for runnable invocations."""

from __future__ import annotations

from contextvars import ContextVar
from typing import Any, Optional
from uuid import UUID

from typing_extensions import TypedDict

from calltree.callbacks.manager import AsyncCallbackManager, Callbacks


class RunnableConfig(TypedDict, total=False):
    """Configuration for a runnable."""

    tags: list[str]
    """Tags for this call and any sub-calls."""

    metadata: dict[str, Any]
    """Metadata for this call and any sub-calls."""

    callbacks: Callbacks
    """Callbacks for this call and any sub-calls."""

    run_name: str
    """Name for the run of this call. Not inherited by sub-calls."""

    run_id: Optional[UUID]
    """Id for the run of this call. Not inherited by sub-calls."""

    configurable: dict[str, Any]
    """Free-form values for the runnable or its sub-calls."""


var_child_runnable_config: ContextVar[Optional[RunnableConfig]] = ContextVar(
    "child_runnable_config", default=None
)

CONFIG_KEYS = ["tags", "metadata", "callbacks", "run_name", "run_id", "configurable"]

COPIABLE_KEYS = ["tags", "metadata", "callbacks", "configurable"]


def ensure_config(config: Optional[RunnableConfig] = None) -> RunnableConfig:
    """Ensure that a config is a dict with all keys present.

    Values from the config of the enclosing runnable call (if any) are used as
    defaults.

    Args:
        config: The config to ensure. Defaults to None.

    Returns:
        RunnableConfig: The ensured config.
    """
    empty = RunnableConfig(
        tags=[],
        metadata={},
        callbacks=None,
        configurable={},
    )
    if var_config := var_child_runnable_config.get():
        empty.update(
            {
                k: v.copy() if k in COPIABLE_KEYS and hasattr(v, "copy") else v
                for k, v in var_config.items()
                if v is not None
            }
        )
    if config is not None:
        empty.update(
            {
                k: v.copy() if k in COPIABLE_KEYS and hasattr(v, "copy") else v
                for k, v in config.items()
                if v is not None and k in CONFIG_KEYS
            }
        )
    return empty


def merge_configs(*configs: Optional[RunnableConfig]) -> RunnableConfig:
    """Merge multiple configs into one.

    Tags are unioned, metadata and configurable are shallow-merged, and the
    last non-empty callbacks win.
    """
    base: RunnableConfig = {}
    for config in (ensure_config(c) for c in configs if c is not None):
        for key in config:
            if key == "tags":
                base["tags"] = sorted(
                    set(base.get("tags", []) + (config["tags"] or []))
                )
            elif key == "metadata":
                base["metadata"] = {
                    **base.get("metadata", {}),
                    **(config["metadata"] or {}),
                }
            elif key == "configurable":
                base["configurable"] = {
                    **base.get("configurable", {}),
                    **(config["configurable"] or {}),
                }
            elif key == "callbacks":
                if config["callbacks"]:
                    base["callbacks"] = config["callbacks"]
            else:
                base[key] = config[key]  # type: ignore[literal-required]
    return base


def patch_config(
    config: Optional[RunnableConfig],
    *,
    callbacks: Callbacks = None,
    run_name: Optional[str] = None,
    configurable: Optional[dict[str, Any]] = None,
) -> RunnableConfig:
    """Return a copy of ``config`` with the given fields replaced.

    Replacing the callbacks drops ``run_name`` and ``run_id``, which belong to
    the run the old callbacks were configured for.
    """
    config = ensure_config(config)
    if callbacks is not None:
        config["callbacks"] = callbacks
        config.pop("run_name", None)
        config.pop("run_id", None)
    if run_name is not None:
        config["run_name"] = run_name
    if configurable is not None:
        config["configurable"] = {**config.get("configurable", {}), **configurable}
    return config


def get_async_callback_manager_for_config(
    config: RunnableConfig,
) -> AsyncCallbackManager:
    """Get an async callback manager for a config.

    Args:
        config: The config.

    Returns:
        AsyncCallbackManager: The async callback manager.
    """
    return AsyncCallbackManager.configure(
        inheritable_callbacks=config.get("callbacks"),
        inheritable_tags=config.get("tags"),
        inheritable_metadata=config.get("metadata"),
    )
