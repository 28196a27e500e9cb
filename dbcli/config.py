"""
Connection profiles for dbcli. Profiles are read from a TOML file, one
section per connection, keyed by the connection id:

    [local-pg]
    name = "Local Postgres"
    type = "postgresql"
    host = "localhost"
    port = 5432
    username = "me"
    password = "${PGPASSWORD}"
    database = "app"

    [notes]
    type = "sqlite"
    filename = "~/notes.db"

    [events]
    type = "mongodb"
    uri = "mongodb://localhost:27017/events"
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import StrEnum
import logging
import os
from pathlib import Path
from string import Template
import tomllib
from typing import Any, Self

from dbcli.errors import TooManyMatchesError

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """
    Thrown to indicate a configuration error.
    """


class EngineFamily(StrEnum):
    """
    The broad kind of an engine. Determines the query dialect, keyword
    sets and templates.
    """

    RELATIONAL = "relational"
    FILE_BASED = "file"
    DOCUMENT = "document"


class EngineType(StrEnum):
    """
    Supported database engines. Adding one here means adding a case to
    every match on EngineType (client factory, introspection queries,
    keyword sets).
    """

    MYSQL = "mysql"
    POSTGRES = "postgresql"
    SQLITE = "sqlite"
    MONGODB = "mongodb"

    @property
    def family(self: Self) -> EngineFamily:
        """
        Returns the engine family.
        """
        match self:
            case EngineType.MYSQL | EngineType.POSTGRES:
                return EngineFamily.RELATIONAL
            case EngineType.SQLITE:
                return EngineFamily.FILE_BASED
            case EngineType.MONGODB:
                return EngineFamily.DOCUMENT


DEFAULT_PORTS = {
    EngineType.MYSQL: 3306,
    EngineType.POSTGRES: 5432,
}


@dataclass(frozen=True)
class ConnectionProfile:
    """
    A single connection profile from the configuration file.
    """

    id: str
    name: str
    engine: EngineType
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None
    database: str | None = None
    filename: Path | None = None
    uri: str | None = None
    ssl: bool = False
    created_at: datetime | None = None

    @property
    def address(self: Self) -> str:
        """
        A printable address for the profile, without credentials.
        """
        match self.engine.family:
            case EngineFamily.FILE_BASED:
                return str(self.filename)
            case EngineFamily.DOCUMENT:
                return self.uri or ""
            case EngineFamily.RELATIONAL:
                db = f"/{self.database}" if self.database else ""
                return f"{self.host}:{self.port}{db}"


class ConnectionStore:
    """
    Represents the parsed configuration data: the stored connection
    profiles, in file order.
    """

    def __init__(
        self: Self, profiles: list[ConnectionProfile], path: Path
    ) -> None:
        """
        Initialize a ConnectionStore object.
        """
        self._profiles = profiles
        self._path = path

    @property
    def path(self: Self) -> Path:
        """
        Returns the path associated with the configuration.
        """
        return self._path

    def connections(self: Self) -> list[ConnectionProfile]:
        """
        Returns all stored profiles.
        """
        return list(self._profiles)

    def get(self: Self, connection_id: str) -> ConnectionProfile | None:
        """
        Returns the profile with exactly this id, or None.
        """
        for profile in self._profiles:
            if profile.id == connection_id:
                return profile

        return None

    def lookup(self: Self, spec: str) -> list[ConnectionProfile] | None:
        """
        Uses a string to look up a profile. Returns a list of profiles whose
        id or name starts with the string (case-blind), or None if no match.
        """
        spec = spec.lower()
        matches = [
            p
            for p in self._profiles
            if p.id.lower().startswith(spec) or p.name.lower().startswith(spec)
        ]

        if len(matches) == 0:
            return None

        return matches

    def resolve(self: Self, spec: str) -> ConnectionProfile | None:
        """
        Resolve a connection specification: an exact id wins; otherwise the
        specification must be a unique prefix of an id or name.

        :raises: TooManyMatchesError if the prefix is ambiguous
        """
        if (profile := self.get(spec)) is not None:
            return profile

        match self.lookup(spec):
            case None:
                return None
            case [profile]:
                return profile
            case many:
                match_str = ", ".join([p.id for p in many])
                raise TooManyMatchesError(
                    f'"{spec}" matches more than one connection in '
                    f'"{self._path}": {match_str}'
                )


class EnvDict(dict):
    """
    For environment substitution, we want a reference to a non-existent
    variable to substitute "", rather than throw an error (as with
    Template.substitute()) or leave the reference intact (as with
    Template.safe_substitute()). To do that, we simply use a custom
    dictionary class.
    """

    def __init__(self: Self, *args, **kw) -> None:
        """Initialize the dictionary"""
        self.update(*args, **kw)

    def __getitem__(self: Self, key: Any) -> Any:
        """Get an item from the dictionary"""
        return super().get(key, "")


def _created_at(value: Any) -> datetime | None:
    """
    Convert a TOML date, datetime or ISO-8601 string to a datetime.
    """
    match value:
        case None:
            return None
        case datetime():
            return value
        case date():
            return datetime.combine(value, time(), tzinfo=timezone.utc)
        case str():
            try:
                return datetime.fromisoformat(value)
            except ValueError as e:
                raise ConfigurationError(f'Bad "created_at" value: {e}') from e
        case _:
            raise ConfigurationError(f'Bad "created_at" value: {value!r}')


def make_profile(
    key: str, values: dict[str, Any], env: EnvDict
) -> ConnectionProfile:
    """
    Build a profile from one configuration section, substituting
    environment variables in string values.

    :param key: the section name, which becomes the connection id
    :param values: the section's settings
    :param env: the environment used for substitution
    """

    def setting(name: str) -> str | None:
        value = values.get(name)
        if value is None:
            return None
        return Template(str(value)).substitute(env)

    engine_name = values.get("type")
    if engine_name is None:
        raise ConfigurationError(f'Section "{key}" has no "type" setting.')

    try:
        engine = EngineType(str(engine_name).lower())
    except ValueError:
        supported = ", ".join(e.value for e in EngineType)
        raise ConfigurationError(
            f'Section "{key}": unsupported type "{engine_name}". '
            f"Supported types: {supported}"
        ) from None

    filename: Path | None = None
    port: int | None = None
    match engine.family:
        case EngineFamily.FILE_BASED:
            if (f := setting("filename")) is None:
                raise ConfigurationError(
                    f'Section "{key}" has no "filename" setting.'
                )
            filename = Path(f).expanduser()

        case EngineFamily.DOCUMENT:
            if setting("uri") is None:
                raise ConfigurationError(
                    f'Section "{key}" has no "uri" setting.'
                )

        case EngineFamily.RELATIONAL:
            try:
                port = int(values.get("port", DEFAULT_PORTS[engine]))
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f'Section "{key}": "port" must be an integer.'
                ) from None

    return ConnectionProfile(
        id=key,
        name=setting("name") or key,
        engine=engine,
        host=setting("host") or (
            "localhost" if engine.family == EngineFamily.RELATIONAL else None
        ),
        port=port,
        username=setting("username"),
        password=setting("password"),
        database=setting("database"),
        filename=filename,
        uri=setting("uri"),
        ssl=bool(values.get("ssl", False)),
        created_at=_created_at(values.get("created_at")),
    )


def load_configuration(config: Path) -> ConnectionStore:
    """
    Reads the configuration file, if it exists, and returns the store of
    connection profiles. The store is empty if there is no configuration
    file or if the configuration file is empty. Raises ConfigurationError
    on error.

    :param config: Path to the configuration file, which does not have to
        exist
    """
    if not config.exists():
        logger.warning('Configuration file "%s" does not exist.', config)
        return ConnectionStore(profiles=[], path=config)

    if not config.is_file():
        raise ConfigurationError(f'Configuration file "{config}" is not a file.')

    try:
        with open(config, mode="rb") as f:
            data = tomllib.load(f)
    except Exception as e:
        # pylint: disable=raise-missing-from
        raise ConfigurationError(f'Unable to read "{config}": {e}')

    env = EnvDict(**os.environ)

    profiles: list[ConnectionProfile] = []
    for key, values in data.items():
        if not isinstance(values, dict):
            raise ConfigurationError(
                f'"{config}": "{key}" is not a section.'
            )
        try:
            profiles.append(make_profile(key, values, env))
        except ConfigurationError as e:
            # pylint: disable=raise-missing-from
            raise ConfigurationError(f'"{config}": {e}')

    return ConnectionStore(profiles=profiles, path=config)
