"""Exceptions raised while bootstrapping infrastructure."""

from typing import Any
from typing import get_args
from typing import get_origin


def qualified_name(obj: Any) -> str:
    """Dotted name of a class, or ``Origin[Arg, ...]`` for a parameterised generic."""

    origin = get_origin(obj)
    if origin is not None:
        return f"{qualified_name(origin)}[{', '.join(qualified_name(arg) for arg in get_args(obj))}]"
    if isinstance(obj, type):
        if obj.__module__ == "builtins":
            return obj.__qualname__
        return f"{obj.__module__}.{obj.__qualname__}"
    return repr(obj)


class InfrastructureError(Exception):
    """Base class for bootstrap failures that must stop the process."""


class MissingConfigurationError(InfrastructureError):
    """A required endpoint or connection string is not configured."""

    def __init__(self, name: str, source: str):
        self.name = name
        self.source = source
        super().__init__(f"Missing configuration '{name}' ({source})")


class AmbiguousBindingError(InfrastructureError):
    """Two repository implementations claim the same capability interface."""

    def __init__(self, interface: Any, implementations: list):
        self.interface = interface
        self.implementations = implementations
        names = ", ".join(sorted(qualified_name(impl) for impl in implementations))
        super().__init__(f"Ambiguous binding for {qualified_name(interface)}: {names}")
