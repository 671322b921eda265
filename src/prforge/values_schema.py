from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import re
import secrets as token_source
from typing import cast

import requests
from requests.auth import HTTPBasicAuth

from prforge.errors import ValuesSchemaError
from prforge.models import GeneratedSecret
from prforge.observability import log_event, log_warning


LOGGER = logging.getLogger("prforge.values_schema")
SECRET_FORMATS = frozenset({"password", "token"})
_TRUE_WORDS = frozenset({"true", "yes", "y", "1", "on"})
_FALSE_WORDS = frozenset({"false", "no", "n", "0", "off"})
_SECRET_NAME_INVALID = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class GeneratedValues:
    values: dict[str, object]
    secrets: tuple[GeneratedSecret, ...] = ()


def parse_set_answers(pairs: Iterable[str]) -> dict[str, str]:
    """Turn repeated ``path=value`` flags into a mapping keyed by dotted path."""
    answers: dict[str, str] = {}
    for pair in pairs:
        path, sep, value = pair.partition("=")
        path = path.strip()
        if not sep or not path:
            raise ValuesSchemaError(f"Invalid --set value {pair!r}; expected path=value")
        answers[path] = value
    return answers


def load_values_schema(
    source: str,
    *,
    username: str | None = None,
    password: str | None = None,
    timeout_seconds: float = 30.0,
    session: requests.Session | None = None,
) -> bytes:
    """Read a JSON schema from a local path or an http(s) URL."""
    if source.startswith(("http://", "https://")):
        http = session or requests.Session()
        auth = HTTPBasicAuth(username, password or "") if username else None
        try:
            response = http.get(source, auth=auth, timeout=timeout_seconds)
        except requests.RequestException as exc:
            raise ValuesSchemaError(
                f"Failed to fetch values schema {source}: {type(exc).__name__}: {exc}"
            ) from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise ValuesSchemaError(
                f"Failed to fetch values schema {source}: HTTP {response.status_code}"
            )
        log_event(LOGGER, "values_schema_fetched", source=source, size=len(response.content))
        return response.content

    try:
        return Path(source).expanduser().read_bytes()
    except OSError as exc:
        raise ValuesSchemaError(f"Failed to read values schema {source}: {exc}") from exc


class SchemaValuesGenerator:
    """Builds a values payload for ``app_name`` from a JSON schema.

    Explicit answers win over schema defaults. Properties whose ``format`` is
    ``password`` or ``token`` never appear in clear text in the payload: they
    become ``GeneratedSecret``s and the payload holds a reference to them.
    """

    def __init__(
        self,
        app_name: str,
        answers: Mapping[str, str] | None = None,
        *,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self._app_name = app_name
        self._answers = dict(answers or {})
        self._token_factory = token_factory or (lambda: token_source.token_urlsafe(24))

    def generate(self, schema: bytes | str) -> GeneratedValues:
        try:
            parsed = json.loads(schema)
        except ValueError as exc:
            raise ValuesSchemaError(f"Values schema is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValuesSchemaError("Values schema root must be an object")

        used: set[str] = set()
        generated: list[GeneratedSecret] = []
        present, values = self._walk(
            cast(dict[str, object], parsed),
            path=(),
            required=False,
            used=used,
            secrets=generated,
        )
        for unused in sorted(set(self._answers) - used):
            log_warning(LOGGER, "values_answer_unused", app=self._app_name, path=unused)

        payload = cast(dict[str, object], values) if present and isinstance(values, dict) else {}
        log_event(
            LOGGER,
            "values_generated",
            app=self._app_name,
            keys=tuple(payload),
            secret_count=len(generated),
        )
        return GeneratedValues(values=payload, secrets=tuple(generated))

    def _walk(
        self,
        schema: dict[str, object],
        *,
        path: tuple[str, ...],
        required: bool,
        used: set[str],
        secrets: list[GeneratedSecret],
    ) -> tuple[bool, object]:
        dotted = ".".join(path)
        if _schema_type(schema) == "object" and isinstance(schema.get("properties"), dict):
            properties = cast(dict[str, object], schema["properties"])
            required_names = schema.get("required")
            required_set = (
                {name for name in required_names if isinstance(name, str)}
                if isinstance(required_names, list)
                else set()
            )
            result: dict[str, object] = {}
            default = schema.get("default")
            if isinstance(default, dict):
                result.update(cast(dict[str, object], default))
            for name, child in properties.items():
                if not isinstance(child, dict):
                    continue
                child_present, child_value = self._walk(
                    cast(dict[str, object], child),
                    path=(*path, name),
                    required=name in required_set,
                    used=used,
                    secrets=secrets,
                )
                if child_present:
                    result[name] = child_value
            return bool(result) or required, result

        if schema.get("format") in SECRET_FORMATS and path:
            if dotted in self._answers:
                used.add(dotted)
                value = self._answers[dotted]
            else:
                value = self._token_factory()
            secret = GeneratedSecret(
                name=self._secret_name(path),
                key=path[-1],
                value=value,
            )
            secrets.append(secret)
            return True, {"kind": "Secret", "name": secret.name}

        if dotted in self._answers:
            used.add(dotted)
            return True, _coerce(self._answers[dotted], schema, dotted)
        if "default" in schema:
            return True, schema["default"]
        if required:
            raise ValuesSchemaError(
                f"No value for required property {dotted!r}; pass --set {dotted}=..."
            )
        return False, None

    def _secret_name(self, path: tuple[str, ...]) -> str:
        raw = "-".join((self._app_name, *path)).lower()
        return _SECRET_NAME_INVALID.sub("-", raw).strip("-")


def _schema_type(schema: dict[str, object]) -> str | None:
    raw = schema.get("type")
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, str) and item != "null":
                return item
    if isinstance(schema.get("properties"), dict):
        return "object"
    return None


def _coerce(raw: str, schema: dict[str, object], dotted: str) -> object:
    kind = _schema_type(schema)
    if kind == "integer":
        try:
            return int(raw)
        except ValueError as exc:
            raise ValuesSchemaError(f"{dotted}: expected an integer, got {raw!r}") from exc
    if kind == "number":
        try:
            return float(raw)
        except ValueError as exc:
            raise ValuesSchemaError(f"{dotted}: expected a number, got {raw!r}") from exc
    if kind == "boolean":
        lowered = raw.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise ValuesSchemaError(f"{dotted}: expected a boolean, got {raw!r}")
    if kind == "array":
        return [item.strip() for item in raw.split(",") if item.strip()]

    choices = schema.get("enum")
    if isinstance(choices, list) and choices and raw not in choices:
        raise ValuesSchemaError(f"{dotted}: {raw!r} is not one of {choices}")
    return raw
