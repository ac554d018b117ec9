import asyncio
import json
import os
import re
from pathlib import Path
from typing import Any

import aiofiles
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, ValidationError

from .exceptions import InvalidSchema, MalformedEnvelope


class SchemaRegistry:
    """Simple file-based JSON schema registry for event ``data`` payloads.

    Used by consumers only; the envelope layer never inspects ``data``.

    Layout under schema_dir:
      - <event_type>.v<version>.json
    Example:
      - voting.create.v1.json
      - agenda.election.create.v1.json
    """

    def __init__(self, schema_dir: str):
        self.base = Path(schema_dir)
        self._cache: dict[str, dict[str, Any]] = {}
        self._validators: dict[str, Draft202012Validator] = {}
        # Cache of latest version per event_type
        self._latest_cache: dict[str, int] = {}

    def has_schema(self, event_type: str, version: int) -> bool:
        return self._key(event_type, version) in self._cache or self._schema_path(event_type, version).is_file()

    async def load(self, event_type: str, version: int) -> dict[str, Any]:
        key = self._key(event_type, version)
        if key not in self._cache:
            path = self._schema_path(event_type, version)
            async with aiofiles.open(path, encoding='utf-8') as f:
                text = await f.read()
            self._cache[key] = json.loads(text)
        return self._cache[key]

    async def validator(self, event_type: str, version: int) -> Draft202012Validator:
        """Compiled validator for (event_type, version).

        Raises:
            InvalidSchema: the schema file is not JSON or not a valid JSON Schema.
        """
        key = self._key(event_type, version)
        if key not in self._validators:
            try:
                schema = await self.load(event_type, version)
                Draft202012Validator.check_schema(schema)
            except (json.JSONDecodeError, SchemaError) as exc:
                self._cache.pop(key, None)
                raise InvalidSchema(f'schema for {event_type} v{version} is unusable: {exc}') from exc
            self._validators[key] = Draft202012Validator(schema)
        return self._validators[key]

    async def validate(self, event_type: str, version: int, data: dict[str, Any]) -> bool:
        """Validate ``data`` against its schema.

        Returns False when no schema is registered for (event_type, version); such
        events pass through unvalidated.

        Raises:
            MalformedEnvelope: data violates the schema.
            InvalidSchema: the registered schema itself is unusable.
        """
        if not self.has_schema(event_type, version):
            return False
        validator = await self.validator(event_type, version)
        try:
            # Validation can be CPU-bound for large schemas; offload to a thread to avoid blocking
            await asyncio.to_thread(validator.validate, data)
        except ValidationError as exc:
            raise MalformedEnvelope(f'{event_type} v{version} data failed validation: {exc.message}') from exc
        return True

    async def latest_version(self, event_type: str) -> int:
        """Discover and cache the highest schema version available for event_type."""
        if event_type in self._latest_cache:
            return self._latest_cache[event_type]

        if not self.base.exists():
            raise FileNotFoundError(f'Schema directory not found: {self.base}')

        ver_re = re.compile(rf'^{re.escape(event_type)}\.v(\d+)\.json$')
        # Collect matching files off the event loop
        paths = await asyncio.to_thread(lambda: list(self.base.glob(f'{event_type}.v*.json')))
        versions = [int(m.group(1)) for p in paths if (m := ver_re.match(p.name))]

        if not versions:
            raise FileNotFoundError(f'No schema versions found for {event_type} under {self.base}')

        latest = max(versions)
        self._latest_cache[event_type] = latest
        return latest

    def _key(self, event_type: str, version: int) -> str:
        return f'{event_type}:v{version}'

    def _schema_path(self, event_type: str, version: int) -> Path:
        return self.base / f'{event_type}.v{version}.json'


def _default_schema_dir() -> str:
    """Resolve default schema directory.

    Priority:
        1) EVENT_SCHEMA_DIR env var (if set)
        2) bundled schemas at <package>/schemas
    """
    env = os.getenv('EVENT_SCHEMA_DIR')
    if env:
        return env
    return str(Path(__file__).resolve().parent / 'schemas')


# Ready-to-use singleton instance
schema_registry = SchemaRegistry(schema_dir=_default_schema_dir())
