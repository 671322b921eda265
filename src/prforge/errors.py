from __future__ import annotations


class PrForgeError(RuntimeError):
    """Base class for failures surfaced to CLI callers."""


class MissingOption(PrForgeError):
    def __init__(self, option: str) -> None:
        super().__init__(f"Missing required option: --{option}")
        self.option = option


class ProviderNotFound(PrForgeError):
    pass


class RegexCompileError(PrForgeError):
    def __init__(self, pattern: str, detail: str) -> None:
        super().__init__(f"Failed to compile regex {pattern!r}: {detail}")
        self.pattern = pattern


class NoMatchError(PrForgeError):
    def __init__(self, pattern: str, file_globs: tuple[str, ...]) -> None:
        globs = ", ".join(file_globs) or "<none>"
        super().__init__(f"Regex {pattern!r} did not match any file in: {globs}")
        self.pattern = pattern
        self.file_globs = file_globs


class MutationIOError(PrForgeError):
    def __init__(self, operation: str, path: str, detail: str) -> None:
        super().__init__(f"Failed to {operation} {path}: {detail}")
        self.operation = operation
        self.path = path


class SecretStoreError(PrForgeError):
    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Failed to write secret at {path}: {detail}")
        self.path = path


class ValuesSchemaError(PrForgeError):
    pass


class WorkspaceError(PrForgeError):
    def __init__(
        self, operation: str, *, repo: str, branch: str | None = None, detail: str = ""
    ) -> None:
        target = repo if branch is None else f"{repo}@{branch}"
        message = f"git {operation} failed for {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.repo = repo
        self.branch = branch


class ProviderAPIError(PrForgeError):
    transient = False

    def __init__(
        self,
        operation: str,
        *,
        repo: str,
        detail: str,
        status_code: int | None = None,
    ) -> None:
        status = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"{operation} failed for {repo}{status}: {detail}")
        self.operation = operation
        self.repo = repo
        self.status_code = status_code


class TransientProviderError(ProviderAPIError):
    """Timeouts, 5xx and 429 responses; safe to retry for idempotent calls."""

    transient = True


class MergeWaitTimeout(ProviderAPIError):
    pass


class OperationCancelled(PrForgeError):
    def __init__(self, step: str) -> None:
        super().__init__(f"Operation cancelled before {step}")
        self.step = step
