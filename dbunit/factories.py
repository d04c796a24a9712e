"""
Model Factory Registry

Wires a Faker generator into factory_boy so tests can build or persist
SQLAlchemy model instances filled with realistic placeholder data.

Factory definitions live in plain Python modules inside the configured
factory directory. Each module exposes a ``register`` hook that receives the
registry::

    from tests.fixtures.models import User

    def register(factory):
        factory.define(User, lambda faker: {
            'name': faker.name(),
            'email': faker.unique.email(),
        })

Tests then use the registry through the test database context::

    user = database.factory(User).create(name='John Yu')
    users = database.factory(User, 5).make()

Every definition is turned into a ``SQLAlchemyModelFactory`` subclass whose
session is the one bound to the active test transaction. ``create`` commits
that session, which releases its SAVEPOINT: the row stays visible to the
test, survives a later failed flush, and disappears when the test
transaction is rolled back.
"""

import importlib.util
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from factory.alchemy import SQLAlchemyModelFactory
from faker import Faker

from .config import DEFAULT_FAKER_LOCALE, TestDatabaseConfig
from .exceptions import FactoryError
from .logging import LogCategory, get_logger

DEFAULT_DEFINITION = 'default'

Definition = Callable[[Faker], Mapping[str, Any]]
SessionProvider = Callable[[Optional[str]], Any]


@dataclass
class FactoryDefinition:
    """A registered model definition and the factory_boy class built from it."""
    model: type
    name: str
    attributes: Definition
    factory_class: Optional[type] = None

    @property
    def connection(self) -> Optional[str]:
        # Models pinned to a non default connection declare __connection__
        return getattr(self.model, '__connection__', None)


class FactoryRegistry:
    """
    Registry of model factory definitions keyed by model type.

    Args:
        faker_locale: Locale for the fake data generator
        faker_seed: Seed for reproducible fake data, or None for random data
        session_provider: Callable returning the SQLAlchemy session for a
            connection name; required for ``create``
    """

    def __init__(self, faker_locale: str = DEFAULT_FAKER_LOCALE,
                 faker_seed: Optional[int] = None,
                 session_provider: Optional[SessionProvider] = None):
        self.faker_locale = faker_locale
        self.faker_seed = faker_seed
        self.session_provider = session_provider
        self.logger = get_logger('factories')
        self._faker: Optional[Faker] = None
        self._definitions: Dict[Tuple[type, str], FactoryDefinition] = {}

    @property
    def faker(self) -> Faker:
        """The shared Faker instance, built on first use."""
        if self._faker is None:
            faker = Faker(self.faker_locale)
            if self.faker_seed is not None:
                faker.seed_instance(self.faker_seed)
            self._faker = faker
        return self._faker

    def define(self, model: type, attributes: Definition,
               name: str = DEFAULT_DEFINITION) -> FactoryDefinition:
        """
        Register a definition for a model class.

        Args:
            model: SQLAlchemy mapped class
            attributes: Callable taking the Faker instance and returning the
                field values of one instance
            name: Definition name, for models with several variants

        Returns:
            The registered FactoryDefinition
        """
        if not callable(attributes):
            raise FactoryError(f"factory definition for {model.__name__} is not callable")

        definition = FactoryDefinition(model=model, name=name, attributes=attributes)
        definition.factory_class = self._build_factory_class(definition)
        self._definitions[(model, name)] = definition

        self.logger.debug(
            "Factory defined",
            category=LogCategory.FACTORY.value,
            model=model.__name__,
            definition=name,
        )
        return definition

    def define_as(self, model: type, name: str, attributes: Definition) -> FactoryDefinition:
        return self.define(model, attributes, name=name)

    def load(self, path: Union[str, Path]) -> int:
        """
        Import factory modules and call their ``register`` hook.

        Args:
            path: A factory directory, or a single factory module

        Returns:
            Number of modules loaded
        """
        path = Path(path)
        if path.is_dir():
            files = sorted(
                (p for p in path.glob('*.py') if not p.name.startswith('_')),
                key=lambda p: p.name,
            )
        else:
            files = [path]

        for file_path in files:
            module_name = f"dbunit_factories.{file_path.stem}"
            spec = importlib.util.spec_from_file_location(module_name, file_path)
            if spec is None or spec.loader is None:
                raise FactoryError(f"cannot load factory module {file_path}")
            module = importlib.util.module_from_spec(spec)
            try:
                spec.loader.exec_module(module)
            except Exception as exc:
                raise FactoryError(f"cannot load factory module {file_path}: {exc}") from exc

            register = getattr(module, 'register', None)
            if not callable(register):
                raise FactoryError(f"factory module {file_path} has no register() function")
            register(self)

        self.logger.info(
            "Factories loaded",
            category=LogCategory.FACTORY.value,
            path=str(path),
            modules=len(files),
            definitions=len(self._definitions),
        )
        return len(files)

    def definition(self, model: Union[type, str], name: str = DEFAULT_DEFINITION) -> FactoryDefinition:
        """Look up a definition by model class or by model class name."""
        if isinstance(model, str):
            for (candidate, candidate_name), definition in self._definitions.items():
                if candidate.__name__ == model and candidate_name == name:
                    return definition
        else:
            definition = self._definitions.get((model, name))
            if definition is not None:
                return definition

        model_name = model if isinstance(model, str) else model.__name__
        raise FactoryError(
            f"unable to locate factory with name [{name}] for [{model_name}]",
            details={'model': model_name, 'definition': name},
        )

    def has(self, model: Union[type, str], name: str = DEFAULT_DEFINITION) -> bool:
        try:
            self.definition(model, name)
        except FactoryError:
            return False
        return True

    def __call__(self, model: Union[type, str], count: Optional[int] = None,
                 name: str = DEFAULT_DEFINITION) -> 'FactoryBuilder':
        return FactoryBuilder(self, self.definition(model, name), count)

    def __len__(self) -> int:
        return len(self._definitions)

    def session_for(self, definition: FactoryDefinition):
        if self.session_provider is None:
            raise FactoryError(
                f"no database session available to create {definition.model.__name__}"
            )
        return self.session_provider(definition.connection)

    def attributes(self, definition: FactoryDefinition,
                   overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Evaluate a definition and apply overrides."""
        values = definition.attributes(self.faker)
        if not isinstance(values, Mapping):
            raise FactoryError(
                f"factory definition for {definition.model.__name__} must return a mapping"
            )
        attributes = dict(values)
        if overrides:
            attributes.update(overrides)

        # Callable values are resolved last and see the other attributes
        for key, value in list(attributes.items()):
            if callable(value) and not isinstance(value, type):
                attributes[key] = value(attributes)
        return attributes

    def _build_factory_class(self, definition: FactoryDefinition) -> type:
        registry = self

        def _adjust_kwargs(cls, **kwargs):
            return registry.attributes(definition, kwargs)

        meta = type('Meta', (), {
            'model': definition.model,
            'sqlalchemy_session_factory': lambda: registry.session_for(definition),
            # commit only releases the session savepoint inside the test transaction
            'sqlalchemy_session_persistence': 'commit',
        })
        return type(
            f"{definition.model.__name__}Factory",
            (SQLAlchemyModelFactory,),
            {'Meta': meta, '_adjust_kwargs': classmethod(_adjust_kwargs)},
        )


class FactoryBuilder:
    """
    Builds one or ``count`` instances from a definition.

    ``make`` returns unsaved instances, ``create`` persists them through the
    transactional session, ``raw`` returns attribute mappings only.
    """

    def __init__(self, registry: FactoryRegistry, definition: FactoryDefinition,
                 count: Optional[int] = None):
        if count is not None and count < 0:
            raise FactoryError(f"factory count must not be negative, got {count}")
        self.registry = registry
        self.definition = definition
        self.count = count

    def times(self, count: int) -> 'FactoryBuilder':
        return FactoryBuilder(self.registry, self.definition, count)

    def make(self, **overrides) -> Union[Any, List[Any]]:
        factory_class = self.definition.factory_class
        if self.count is None:
            return factory_class.build(**overrides)
        return factory_class.build_batch(self.count, **overrides)

    def create(self, **overrides) -> Union[Any, List[Any]]:
        factory_class = self.definition.factory_class
        if self.count is None:
            instance = factory_class.create(**overrides)
        else:
            instance = factory_class.create_batch(self.count, **overrides)

        self.registry.logger.debug(
            "Factory created",
            category=LogCategory.FACTORY.value,
            model=self.definition.model.__name__,
            count=1 if self.count is None else self.count,
        )
        return instance

    def raw(self, **overrides) -> Union[Dict[str, Any], List[Dict[str, Any]]]:
        if self.count is None:
            return self.registry.attributes(self.definition, overrides)
        return [self.registry.attributes(self.definition, overrides) for _ in range(self.count)]


def init_factories(config: TestDatabaseConfig,
                   session_provider: Optional[SessionProvider] = None) -> FactoryRegistry:
    """Create a registry for ``config`` and load its factory modules."""
    registry = FactoryRegistry(
        faker_locale=config.faker_locale,
        faker_seed=config.faker_seed,
        session_provider=session_provider,
    )
    registry.load(config.factory_path)
    return registry
