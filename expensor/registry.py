"""
Plugin registry
Maps reader and writer names to plugins exposing a small capability set
(name, description, required_scopes, config_schema, create).
"""

from typing import Any, Dict, List, Protocol, Sequence, Tuple

from .config import BufferConfig, ReaderConfig
from .errors import ConfigurationError


class ReaderPlugin(Protocol):
    name: str
    description: str
    required_scopes: Sequence[str]

    def config_schema(self) -> Dict[str, Any]:
        ...

    def create(self, session, raw_config: Any, base_currency: str = ..., shutdown_timeout: float = ...) -> Tuple[Any, ReaderConfig]:
        ...


class WriterPlugin(Protocol):
    name: str
    description: str
    required_scopes: Sequence[str]

    def config_schema(self) -> Dict[str, Any]:
        ...

    def create(self, session, raw_config: Any, base_currency: str = ...) -> Tuple[Any, BufferConfig]:
        ...


class Registry:
    """Available reader and writer plugins, resolved once at startup"""

    def __init__(self):
        self._readers: Dict[str, ReaderPlugin] = {}
        self._writers: Dict[str, WriterPlugin] = {}

    def register_reader(self, plugin: ReaderPlugin) -> None:
        if plugin.name in self._readers:
            raise ValueError(f"reader plugin {plugin.name!r} already registered")
        self._readers[plugin.name] = plugin

    def register_writer(self, plugin: WriterPlugin) -> None:
        if plugin.name in self._writers:
            raise ValueError(f"writer plugin {plugin.name!r} already registered")
        self._writers[plugin.name] = plugin

    def get_reader(self, name: str) -> ReaderPlugin:
        try:
            return self._readers[name]
        except KeyError:
            raise ConfigurationError(f"reader plugin {name!r} not found") from None

    def get_writer(self, name: str) -> WriterPlugin:
        try:
            return self._writers[name]
        except KeyError:
            raise ConfigurationError(f"writer plugin {name!r} not found") from None

    def list_readers(self) -> List[ReaderPlugin]:
        return list(self._readers.values())

    def list_writers(self) -> List[WriterPlugin]:
        return list(self._writers.values())

    def all_scopes(self, reader_name: str, writer_name: str) -> List[str]:
        """OAuth scopes needed by a reader/writer pair, de-duplicated"""
        scopes = set(self.get_reader(reader_name).required_scopes)
        scopes.update(self.get_writer(writer_name).required_scopes)
        return sorted(scopes)


def default_registry() -> Registry:
    from .sinks.csv_sink import CsvPlugin
    from .sinks.json_sink import JsonPlugin
    from .sinks.postgres import PostgresPlugin
    from .sinks.sheets import SheetsPlugin
    from .sources.gmail import GmailPlugin

    registry = Registry()
    registry.register_reader(GmailPlugin())
    for plugin in (SheetsPlugin(), CsvPlugin(), JsonPlugin(), PostgresPlugin()):
        registry.register_writer(plugin)
    return registry
