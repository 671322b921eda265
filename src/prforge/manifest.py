from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import cast

import yaml

from prforge.errors import MissingOption, MutationIOError
from prforge.models import GeneratedSecret, MutationOutcome
from prforge.mutations import MutationStrategy
from prforge.observability import log_event, log_warning
from prforge.secrets_store import SecretMaterializer
from prforge.values_schema import SchemaValuesGenerator


LOGGER = logging.getLogger("prforge.manifest")
REQUIREMENTS_FILENAME = "requirements.yaml"
VALUES_FILENAME = "values.yaml"


@dataclass(frozen=True)
class ChartRepository:
    url: str
    username: str | None = None
    password: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class ManifestMutation(MutationStrategy):
    """Install or bump an application chart in a GitOps environment repository.

    The environment lists its charts in ``<env_dir>/requirements.yaml``; each
    release gets a values overlay in ``<env_dir>/<alias or app>/values.yaml``.
    """

    app_name: str
    version: str
    chart_repo: ChartRepository
    materializer: SecretMaterializer
    values_schema: bytes | None = None
    values_file: Path | None = None
    alias: str | None = None
    generator: SchemaValuesGenerator | None = None
    env_dir: str = "env"

    @property
    def release_name(self) -> str:
        return self.alias or self.app_name

    def apply(self, workspace_path: Path) -> MutationOutcome:
        env_path = workspace_path / self.env_dir
        release_dir = env_path / self.release_name
        written: list[Path] = []

        requirements_path = env_path / REQUIREMENTS_FILENAME
        if self._update_requirements(requirements_path, workspace_path):
            written.append(requirements_path)

        values: dict[str, object] = {}
        secrets: tuple[GeneratedSecret, ...] = ()
        if self.generator is not None and self.values_schema:
            generated = self.generator.generate(self.values_schema)
            values = generated.values
            secrets = generated.secrets
        values = _merge_values(values, self._values_payload())

        routes = self.materializer.route(secrets, chart_dir=release_dir)
        written.extend(self.materializer.materialize(routes, values=values))

        if values:
            overlay_path = release_dir / VALUES_FILENAME
            rendered = yaml.safe_dump(values, sort_keys=False, default_flow_style=False)
            if _write_if_changed(overlay_path, rendered, workspace_path):
                written.append(overlay_path)

        changed = tuple(path.relative_to(workspace_path).as_posix() for path in written)
        log_event(
            LOGGER,
            "mutation_applied",
            kind="manifest",
            app=self.app_name,
            version=self.version,
            changed_files=changed,
        )
        return MutationOutcome(changed_files=changed)

    def _update_requirements(self, path: Path, workspace_path: Path) -> bool:
        document = _load_yaml_mapping(path, workspace_path)
        raw_dependencies = document.get("dependencies")
        dependencies: list[object] = (
            list(raw_dependencies) if isinstance(raw_dependencies, list) else []
        )

        entry: dict[str, object] = {
            "name": self.app_name,
            "version": self.version,
            "repository": self.chart_repo.url,
        }
        if self.alias:
            entry["alias"] = self.alias

        for index, existing in enumerate(dependencies):
            if not isinstance(existing, dict):
                continue
            if existing.get("name") != self.app_name or existing.get("alias") != self.alias:
                continue
            merged = {**cast(dict[str, object], existing), **entry}
            if merged == existing:
                return False
            dependencies[index] = merged
            log_event(
                LOGGER,
                "requirement_bumped",
                app=self.app_name,
                alias=self.alias,
                previous_version=existing.get("version"),
                version=self.version,
            )
            break
        else:
            dependencies.append(entry)
            log_event(LOGGER, "requirement_added", app=self.app_name, alias=self.alias)

        document["dependencies"] = dependencies
        rendered = yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
        return _write_if_changed(path, rendered, workspace_path)

    def _values_payload(self) -> dict[str, object]:
        if self.values_file is None:
            return {}
        if self.values_schema:
            log_warning(
                LOGGER,
                "values_file_overrides_schema",
                app=self.app_name,
                values_file=self.values_file,
            )
        if not self.values_file.is_file():
            raise MutationIOError("read", str(self.values_file), "values file does not exist")
        return _load_yaml_mapping(self.values_file, None)


def new_manifest_mutation(
    app_name: str,
    version: str,
    chart_repo: ChartRepository,
    values_schema: bytes | None = None,
    *,
    materializer: SecretMaterializer,
    alias: str | None = None,
    values_file: Path | None = None,
    answers: Mapping[str, str] | None = None,
    generator: SchemaValuesGenerator | None = None,
    env_dir: str = "env",
) -> ManifestMutation:
    if not app_name:
        raise MissingOption("name")
    if not version:
        raise MissingOption("version")
    if not chart_repo.url:
        raise MissingOption("repository")
    if values_schema and generator is None:
        generator = SchemaValuesGenerator(app_name, answers)
    return ManifestMutation(
        app_name=app_name,
        version=version,
        chart_repo=chart_repo,
        materializer=materializer,
        values_schema=values_schema,
        values_file=values_file,
        alias=alias,
        generator=generator,
        env_dir=env_dir,
    )


def _merge_values(base: dict[str, object], override: Mapping[str, object]) -> dict[str, object]:
    """Keys from ``override`` win; nested mappings are merged key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merge_values(
                cast(dict[str, object], current), cast(dict[str, object], value)
            )
        else:
            merged[key] = value
    return merged


def _display_path(path: Path, workspace_path: Path | None) -> str:
    if workspace_path is not None and path.is_relative_to(workspace_path):
        return path.relative_to(workspace_path).as_posix()
    return str(path)


def _load_yaml_mapping(path: Path, workspace_path: Path | None) -> dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeDecodeError) as exc:
        raise MutationIOError("read", _display_path(path, workspace_path), str(exc)) from exc
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MutationIOError("parse", _display_path(path, workspace_path), str(exc)) from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise MutationIOError(
            "parse", _display_path(path, workspace_path), "expected a mapping at the top level"
        )
    return cast(dict[str, object], loaded)


def _write_if_changed(path: Path, content: str, workspace_path: Path) -> bool:
    try:
        if path.exists() and path.read_text(encoding="utf-8") == content:
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise MutationIOError("write", _display_path(path, workspace_path), str(exc)) from exc
    return True
