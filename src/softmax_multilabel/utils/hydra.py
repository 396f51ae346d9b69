"""Hydra ConfigStore registration for loss classes."""

from __future__ import annotations

from typing import Any

from hydra.core.config_store import ConfigStore
from loguru import logger


def register(
    cls: type[Any] | None = None,
    *,
    group: str | None = None,
    name: str | None = None,
    **kwargs: Any,
) -> type[Any] | Any:
    """Decorator storing a ``_target_`` config node for the decorated class.

    Without *group*, the last component of the class's module path is used
    (``softmax_multilabel.losses`` -> ``losses``).

    Arguments:
        cls: The class to register.
        group: The ConfigStore group.
        name: Config name; defaults to the class name.
        **kwargs: Default constructor arguments stored in the node.
    """

    def _process_class(target_cls: type[Any]) -> type[Any]:
        config_group = group or target_cls.__module__.split(".")[-1]
        config_name = name or target_cls.__name__

        node = {"_target_": f"{target_cls.__module__}.{target_cls.__qualname__}"}
        node.update(kwargs)
        logger.debug(
            f"Registering {target_cls.__name__} as '{config_name}' in group '{config_group}'"
        )
        ConfigStore.instance().store(group=config_group, name=config_name, node=node)
        return target_cls

    if cls is None:
        return _process_class
    return _process_class(cls)
