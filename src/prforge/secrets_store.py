from __future__ import annotations

from abc import ABC, abstractmethod
import base64
from collections.abc import Mapping
from dataclasses import dataclass
import logging
from pathlib import Path

import requests

from prforge.config import VaultConfig
from prforge.errors import MissingOption, MutationIOError, SecretStoreError
from prforge.models import GeneratedSecret, RepositoryReference
from prforge.observability import log_event


LOGGER = logging.getLogger("prforge.secrets_store")

GENERATED_SECRETS_KEY = "appsGeneratedSecrets"
SECRET_TEMPLATE_FILENAME = "app-generated-secret-template.yaml"
SECRET_TEMPLATE = f"""\
{{{{- range .Values.{GENERATED_SECRETS_KEY} }}}}
---
apiVersion: v1
kind: Secret
metadata:
  name: {{{{ .name }}}}
type: Opaque
data:
  {{{{ .key }}}}: {{{{ .value }}}}
{{{{- end }}}}
"""


class SecretStore(ABC):
    @abstractmethod
    def write_map(self, path: str, data: dict[str, str]) -> None:
        """Persist ``data`` at ``path``; raises SecretStoreError on failure."""


class VaultSecretStore(SecretStore):
    """KV version 2 writes through the Vault HTTP API."""

    def __init__(
        self,
        config: VaultConfig,
        *,
        token: str,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._config = config
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers["X-Vault-Token"] = token

    def write_map(self, path: str, data: dict[str, str]) -> None:
        url = f"{self._config.address}/v1/{self._config.mount}/data/{path}"
        try:
            response = self._session.post(
                url, json={"data": data}, timeout=self._timeout_seconds
            )
        except requests.RequestException as exc:
            raise SecretStoreError(path, f"{type(exc).__name__}: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise SecretStoreError(
                path, f"HTTP {response.status_code}: {response.text[:240] or '<empty>'}"
            )


def vault_store_from_env(config: VaultConfig, environ: Mapping[str, str]) -> VaultSecretStore:
    token = environ.get(config.token_env)
    if not token:
        raise MissingOption(config.token_env)
    return VaultSecretStore(config, token=token)


@dataclass(frozen=True)
class SecretScope:
    kind: str
    identifier: str

    @classmethod
    def gitops(cls, repo: RepositoryReference) -> SecretScope:
        return cls(kind="gitOps", identifier=f"{repo.organisation}/{repo.name}")

    @classmethod
    def team(cls, team: str) -> SecretScope:
        return cls(kind="teams", identifier=team)

    def path_for(self, secret_name: str) -> str:
        return "/".join([self.kind, self.identifier, secret_name])


@dataclass(frozen=True)
class StoreWrite:
    path: str
    data: dict[str, str]


@dataclass(frozen=True)
class TemplateEmbed:
    template_path: Path
    entries: tuple[dict[str, str], ...]


SecretRoute = StoreWrite | TemplateEmbed


class SecretMaterializer:
    """Routes generated secrets either to an external store or to an in-chart template.

    The routing decision is made once per invocation in ``route``; the two
    destinations are never mixed.
    """

    def __init__(self, *, store: SecretStore | None, scope: SecretScope) -> None:
        self._store = store
        self._scope = scope

    @property
    def uses_store(self) -> bool:
        return self._store is not None

    def route(
        self, secrets: tuple[GeneratedSecret, ...], *, chart_dir: Path
    ) -> tuple[SecretRoute, ...]:
        if not secrets:
            return ()
        if self._store is not None:
            return tuple(
                StoreWrite(path=self._scope.path_for(secret.name), data={secret.key: secret.value})
                for secret in secrets
            )
        entries = tuple(
            {
                "name": secret.name,
                "key": secret.key,
                "value": base64.b64encode(secret.value.encode("utf-8")).decode("ascii"),
            }
            for secret in secrets
        )
        return (
            TemplateEmbed(
                template_path=chart_dir / "templates" / SECRET_TEMPLATE_FILENAME,
                entries=entries,
            ),
        )

    def materialize(
        self, routes: tuple[SecretRoute, ...], *, values: dict[str, object]
    ) -> tuple[Path, ...]:
        """Apply ``routes``; embedded entries are appended to ``values`` in place.

        Returns the files written.
        """
        written: list[Path] = []
        for route in routes:
            if isinstance(route, StoreWrite):
                if self._store is None:
                    raise SecretStoreError(route.path, "no secret store configured")
                self._store.write_map(route.path, route.data)
                log_event(LOGGER, "secret_store_written", path=route.path)
                continue

            existing = values.get(GENERATED_SECRETS_KEY)
            merged = list(existing) if isinstance(existing, list) else []
            merged.extend(route.entries)
            values[GENERATED_SECRETS_KEY] = merged
            try:
                route.template_path.parent.mkdir(parents=True, exist_ok=True)
                route.template_path.write_text(SECRET_TEMPLATE, encoding="utf-8")
            except OSError as exc:
                raise MutationIOError("write", str(route.template_path), str(exc)) from exc
            log_event(
                LOGGER,
                "secret_template_written",
                path=str(route.template_path),
                secret_count=len(route.entries),
            )
            written.append(route.template_path)
        return tuple(written)
