from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
import logging
import re

from prforge.errors import MissingOption, MutationIOError, NoMatchError, RegexCompileError
from prforge.models import MutationOutcome
from prforge.observability import log_event, log_warning


LOGGER = logging.getLogger("prforge.mutations")
_VERSION_GROUP = "version"


class MutationStrategy(ABC):
    @abstractmethod
    def apply(self, workspace_path: Path) -> MutationOutcome:
        """Transform files under ``workspace_path`` and report which ones changed."""


@dataclass(frozen=True)
class RegexMutation(MutationStrategy):
    """Replace a version string in every file matched by ``file_globs``.

    The replaced span is the named group ``version`` when the pattern has one,
    otherwise the first capturing group, otherwise the whole match.
    """

    version: str
    pattern: re.Pattern[str]
    file_globs: tuple[str, ...]

    def apply(self, workspace_path: Path) -> MutationOutcome:
        matched_any = False
        changed: list[str] = []
        for path in _expand_globs(workspace_path, self.file_globs):
            relpath = path.relative_to(workspace_path).as_posix()
            try:
                original = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise MutationIOError("read", relpath, str(exc)) from exc

            updated, match_count = self._substitute(original)
            if match_count == 0:
                log_warning(
                    LOGGER,
                    "regex_file_unmatched",
                    file=relpath,
                    pattern=self.pattern.pattern,
                )
                continue
            matched_any = True
            if updated == original:
                continue
            try:
                path.write_text(updated, encoding="utf-8")
            except OSError as exc:
                raise MutationIOError("write", relpath, str(exc)) from exc
            changed.append(relpath)

        if not matched_any:
            raise NoMatchError(self.pattern.pattern, self.file_globs)

        log_event(
            LOGGER,
            "mutation_applied",
            kind="regex",
            version=self.version,
            changed_files=tuple(changed),
        )
        return MutationOutcome(changed_files=tuple(changed))

    def _substitute(self, content: str) -> tuple[str, int]:
        group = _target_group(self.pattern)
        pieces: list[str] = []
        cursor = 0
        match_count = 0
        for match in self.pattern.finditer(content):
            start, end = match.span(group)
            if start < 0:
                continue
            match_count += 1
            pieces.append(content[cursor:start])
            pieces.append(self.version)
            cursor = end
        pieces.append(content[cursor:])
        return "".join(pieces), match_count


def new_regex_mutation(version: str, pattern: str, *file_globs: str) -> RegexMutation:
    if not pattern:
        raise MissingOption("regex")
    if not version:
        raise MissingOption("version")
    globs = tuple(glob for glob in file_globs if glob)
    if not globs:
        raise MissingOption("files")
    normalized = ensure_multiline(pattern)
    try:
        compiled = re.compile(normalized)
    except re.error as exc:
        raise RegexCompileError(normalized, str(exc)) from exc
    return RegexMutation(version=version, pattern=compiled, file_globs=globs)


def ensure_multiline(pattern: str) -> str:
    if pattern.startswith("(?m"):
        return pattern
    return f"(?m){pattern}"


def _target_group(pattern: re.Pattern[str]) -> int | str:
    if _VERSION_GROUP in pattern.groupindex:
        return _VERSION_GROUP
    if pattern.groups >= 1:
        return 1
    return 0


def _expand_globs(root: Path, file_globs: tuple[str, ...]) -> list[Path]:
    seen: set[Path] = set()
    paths: list[Path] = []
    for file_glob in file_globs:
        for path in sorted(root.glob(file_glob)):
            if not path.is_file() or ".git" in path.relative_to(root).parts:
                continue
            if path in seen:
                continue
            seen.add(path)
            paths.append(path)
    return paths
