"""Repository discovery and the process-wide service registry.

Repositories are plain classes deriving from ``RepositoryBase[Entity, Key]``
and from one or more *capability interfaces* (abstract classes or Protocols
such as ``UserRepository``).  :func:`discover_repositories` finds them in a
module or package and binds each interface to its implementation.  Generic
interfaces are bound per parameterisation (``Repository[User, int]``).

The :class:`ServiceRegistry` is built once at startup, passed to the
application, and never mutated.  Repository instances live in a
:class:`UnitOfWork` and are discarded when it ends.
"""

from __future__ import annotations

import importlib
import inspect
import pkgutil
from abc import ABC
from dataclasses import dataclass
from dataclasses import field
from types import MappingProxyType
from types import ModuleType
from typing import Any
from typing import Dict
from typing import FrozenSet
from typing import Generic
from typing import Iterable
from typing import List
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Protocol
from typing import Type
from typing import TypeVar
from typing import get_args
from typing import get_origin

from sqlalchemy.orm import Session

from infracore.core.interfaces import BlobStorage
from infracore.core.interfaces import EmailService
from infracore.database import DatabaseHandle
from infracore.exceptions import AmbiguousBindingError
from infracore.exceptions import qualified_name
from infracore.utils.log import get_logger

TEntity = TypeVar("TEntity")
TKey = TypeVar("TKey")

_T = TypeVar("_T")


class RepositoryBase(Generic[TEntity, TKey]):
    """Generic repository over one SQLAlchemy-mapped entity.

    Subclasses parameterise the base, e.g.
    ``class SqlUserRepository(RepositoryBase[User, int], UserRepository)``;
    the entity class is picked up from that parameterisation.
    """

    entity_type: Optional[type] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for base in cls.__dict__.get("__orig_bases__", ()):
            if get_origin(base) is RepositoryBase:
                entity = get_args(base)[0]
                if isinstance(entity, type):
                    cls.entity_type = entity

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, key: TKey) -> Optional[TEntity]:
        return self.session.get(self.entity_type, key)

    def add(self, entity: TEntity) -> TEntity:
        self.session.add(entity)
        return entity

    def remove(self, entity: TEntity) -> None:
        self.session.delete(entity)


class Binding(NamedTuple):
    interface: Any
    implementation: type

    def describe(self) -> str:
        return f"{qualified_name(self.interface)} -> {qualified_name(self.implementation)}"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _module_classes(module: ModuleType) -> List[type]:
    modules = [module]
    if hasattr(module, "__path__"):
        for info in pkgutil.walk_packages(module.__path__, prefix=f"{module.__name__}."):
            modules.append(importlib.import_module(info.name))

    classes = []
    for mod in modules:
        for _, obj in inspect.getmembers(mod, inspect.isclass):
            if obj.__module__ == mod.__name__:
                classes.append(obj)
    return sorted(set(classes), key=qualified_name)


def _extends_generic_base(cls: type, generic_base: type) -> bool:
    for klass in cls.__mro__:
        for base in klass.__dict__.get("__orig_bases__", ()):
            origin = get_origin(base)
            if origin is not None and isinstance(origin, type) and issubclass(origin, generic_base):
                return True
    return False


def _is_protocol(cls: type) -> bool:
    return bool(cls.__dict__.get("_is_protocol", False))


def _is_concrete(cls: type) -> bool:
    return not inspect.isabstract(cls) and not _is_protocol(cls)


def _closed_parameterisations(cls: type, generic: type) -> List[Any]:
    """``generic[...]`` forms in *cls*'s bases whose arguments are all concrete."""

    found = []
    for klass in cls.__mro__:
        for base in klass.__dict__.get("__orig_bases__", ()):
            if get_origin(base) is generic and not getattr(base, "__parameters__", ()) and base not in found:
                found.append(base)
    return found


def _capability_interfaces(cls: type, generic_base: type) -> List[Any]:
    interfaces: List[Any] = []
    for klass in cls.__mro__[1:]:
        if klass in (object, Generic, Protocol, ABC):
            continue
        if issubclass(klass, generic_base):
            continue
        if not (inspect.isabstract(klass) or _is_protocol(klass)):
            continue
        if getattr(klass, "__parameters__", ()):
            # Generic interfaces are bound per parameterisation, e.g.
            # Repository[User, int] and Repository[Tenant, str] are distinct.
            interfaces.extend(_closed_parameterisations(cls, klass))
        else:
            interfaces.append(klass)
    return interfaces


def validate_bindings(bindings: Iterable[Binding]) -> FrozenSet[Binding]:
    """Reject interfaces claimed by more than one implementation."""

    claims: Dict[Any, List[type]] = {}
    for binding in bindings:
        implementations = claims.setdefault(binding.interface, [])
        if binding.implementation not in implementations:
            implementations.append(binding.implementation)

    for interface, implementations in claims.items():
        if len(implementations) > 1:
            raise AmbiguousBindingError(interface, implementations)

    return frozenset(Binding(interface, impls[0]) for interface, impls in claims.items())


def discover_repositories(
    module: ModuleType, generic_repository_base: type = RepositoryBase
) -> FrozenSet[Binding]:
    """Bind every capability interface in *module* to its repository class.

    Raises:
        AmbiguousBindingError: If two concrete repositories implement the same
            interface.
    """

    bindings = []
    for cls in _module_classes(module):
        if not _is_concrete(cls) or not _extends_generic_base(cls, generic_repository_base):
            continue
        for interface in _capability_interfaces(cls, generic_repository_base):
            bindings.append(Binding(interface, cls))

    result = validate_bindings(bindings)
    get_logger(component="registrar").info(
        "repositories_discovered",
        module=module.__name__,
        bindings=sorted(binding.describe() for binding in result),
    )
    return result


# ---------------------------------------------------------------------------
# Registry + unit of work
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceRegistry:
    """
    Immutable registry of shared resources and repository bindings.

    Built once at startup, passed to the application explicitly.
    """

    database: DatabaseHandle
    email_service: EmailService
    secret_store: Optional[Any] = None
    blob_stores: Mapping[str, BlobStorage] = field(default_factory=lambda: MappingProxyType({}))
    repositories: Mapping[Any, type] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(
        cls,
        *,
        database: DatabaseHandle,
        email_service: EmailService,
        secret_store: Optional[Any] = None,
        blob_stores: Optional[Mapping[str, BlobStorage]] = None,
        bindings: Iterable[Binding] = (),
    ) -> "ServiceRegistry":
        """
        Build registry from provisioned resources and repository bindings.

        Bindings from several scans (or an explicit list) are merged and
        validated together.

        Raises:
            AmbiguousBindingError: If two bindings claim the same interface
        """
        validated = validate_bindings(bindings)
        return cls(
            database=database,
            email_service=email_service,
            secret_store=secret_store,
            blob_stores=MappingProxyType(dict(blob_stores or {})),
            repositories=MappingProxyType({b.interface: b.implementation for b in validated}),
        )

    def get_blob_storage(self, connection_name: str) -> BlobStorage:
        try:
            return self.blob_stores[connection_name]
        except KeyError:
            raise LookupError(f"No blob storage registered as '{connection_name}'") from None

    def create_scope(self) -> "UnitOfWork":
        return UnitOfWork(self)


class UnitOfWork:
    """One logical request/transaction.

    Repositories requested from the scope share a single session and are
    created at most once per interface.  Leaving the ``with`` block commits
    (or rolls back on error) and discards every instance.
    """

    def __init__(self, registry: ServiceRegistry):
        self.registry = registry
        self._session: Optional[Session] = None
        self._instances: Dict[type, Any] = {}
        self._closed = False

    @property
    def session(self) -> Session:
        if self._closed:
            raise RuntimeError("Unit of work has already ended")
        if self._session is None:
            self._session = self.registry.database.session_factory()
        return self._session

    def get(self, interface: Type[_T]) -> _T:
        if self._closed:
            raise RuntimeError("Unit of work has already ended")
        if interface not in self._instances:
            implementation = self.registry.repositories.get(interface)
            if implementation is None:
                raise LookupError(f"No repository registered for {qualified_name(interface)}")
            self._instances[interface] = implementation(self.session)
        return self._instances[interface]

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self._session is not None:
                if exc_type is None:
                    self._session.commit()
                else:
                    self._session.rollback()
        finally:
            if self._session is not None:
                self._session.close()
            self._session = None
            self._instances.clear()
            self._closed = True


__all__ = [
    "Binding",
    "RepositoryBase",
    "ServiceRegistry",
    "UnitOfWork",
    "discover_repositories",
    "validate_bindings",
]
