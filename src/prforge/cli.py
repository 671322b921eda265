from __future__ import annotations

import argparse
from collections.abc import Mapping, Sequence
import os
from pathlib import Path
import sys

from prforge.config import AppConfig, ConfigError, load_config_if_present
from prforge.errors import MissingOption, PrForgeError
from prforge.git_url import parse_git_url, resolve_repository
from prforge.labels import LabelOptions, print_pr_labels
from prforge.manifest import ChartRepository, new_manifest_mutation
from prforge.models import PullRequestHandle, RepositoryReference
from prforge.mutations import MutationStrategy, new_regex_mutation
from prforge.observability import configure_logging
from prforge.orchestrator import BranchScheme, PullRequestOrchestrator, PullRequestTemplate
from prforge.provider_factory import resolve_provider
from prforge.secrets_store import SecretMaterializer, SecretScope, vault_store_from_env
from prforge.shell import CommandError
from prforge.values_schema import load_values_schema, parse_set_answers


ADD_APP_BRANCH_PREFIX = "add-app"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prforge")
    parser.add_argument("--config", type=Path, default=Path("prforge.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log progress to stderr (-v for key events, -vv for everything)",
    )
    groups = parser.add_subparsers(dest="group", required=True)

    pr_parser = groups.add_parser("pr", help="Pull request helpers for pipeline steps")
    pr_commands = pr_parser.add_subparsers(dest="command", required=True)

    labels_parser = pr_commands.add_parser(
        "labels", help="Print pull request labels as shell variable assignments"
    )
    labels_parser.add_argument("--pr", help="Pull request number, PR-<n> accepted")
    labels_parser.add_argument("--prefix", help="Variable name prefix")
    labels_parser.add_argument("--url", help="Repository URL (default: origin of the cwd)")
    _add_batch_flag(labels_parser)

    regex_parser = pr_commands.add_parser(
        "create-regex",
        help="Open a pull request that rewrites a version with a regex",
    )
    regex_parser.add_argument("--regex", default="", help="Pattern; group 'version' is replaced")
    regex_parser.add_argument("--version", default="", help="Replacement value")
    regex_parser.add_argument(
        "--files", nargs="+", action="extend", default=[], help="File globs to rewrite"
    )
    regex_parser.add_argument("--repo", help="Repository URL (default: origin of the cwd)")
    regex_parser.add_argument("--src-repo", help="Repository the new version comes from")
    regex_parser.add_argument("--kind", default="regex", help="Change kind used in the branch")
    regex_parser.add_argument("--label", action="append", default=[], help="Label to add")
    regex_parser.add_argument("--base", help="Base branch (default: remote HEAD)")
    _add_wait_flag(regex_parser)
    _add_batch_flag(regex_parser)

    app_parser = groups.add_parser("app", help="Manage applications in a GitOps environment")
    app_commands = app_parser.add_subparsers(dest="command", required=True)

    add_parser = app_commands.add_parser("add", help="Add or bump an application chart")
    add_parser.add_argument("name", help="Chart name")
    add_parser.add_argument("--version", default="", help="Chart version")
    add_parser.add_argument("--repository", default="", help="Chart repository URL")
    add_parser.add_argument("--username", help="Chart repository username")
    add_parser.add_argument("--password", help="Chart repository password")
    add_parser.add_argument("--alias", help="Release alias for the chart")
    add_parser.add_argument("--schema", help="values.schema.json path or URL")
    add_parser.add_argument("--values", type=Path, help="Values file used verbatim")
    add_parser.add_argument(
        "--set", dest="answers", action="append", default=[], help="Value as path=value"
    )
    add_parser.add_argument("--repo", help="Environment repository URL (default: cwd)")
    add_parser.add_argument("--team", help="Store secrets under the team instead")
    add_parser.add_argument("--base", help="Base branch (default: remote HEAD)")
    _add_wait_flag(add_parser)
    _add_batch_flag(add_parser)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        config = load_config_if_present(args.config)
        configure_logging(_verbose_mode(args.verbose), log_dir=config.log_dir)
        environ = dict(os.environ)
        if args.group == "pr" and args.command == "labels":
            _cmd_pr_labels(config, args, environ=environ)
        elif args.group == "pr" and args.command == "create-regex":
            _cmd_pr_create_regex(config, args, environ=environ)
        elif args.group == "app" and args.command == "add":
            _cmd_app_add(config, args, environ=environ)
        else:
            raise RuntimeError(f"Unhandled command: {args.group} {args.command}")
    except (PrForgeError, ConfigError, CommandError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


def _cmd_pr_labels(
    config: AppConfig, args: argparse.Namespace, *, environ: Mapping[str, str]
) -> None:
    options = LabelOptions(
        pull_request=args.pr,
        prefix=args.prefix or config.labels.prefix,
        git_url=args.url,
        batch_mode=args.batch,
        branch_name=environ.get(config.labels.branch_env),
    )
    print_pr_labels(options, config, cwd=Path.cwd(), out=sys.stdout)


def _cmd_pr_create_regex(
    config: AppConfig, args: argparse.Namespace, *, environ: Mapping[str, str]
) -> None:
    mutation = new_regex_mutation(args.version, args.regex, *args.files)
    repo = resolve_repository(args.repo, cwd=Path.cwd())
    subject = parse_git_url(args.src_repo).name if args.src_repo else repo.name
    kind = args.kind or "regex"
    template = PullRequestTemplate(
        title=f"chore({kind}): bump {subject} to {args.version}",
        body=f"Update {subject} to version {args.version}",
        subject=subject,
        version=args.version,
        labels=tuple(args.label),
        base_branch=args.base,
        source_repo_url=args.src_repo,
    )
    _propose(
        config,
        args,
        repo=repo,
        scheme=BranchScheme(f"{config.git.branch_prefix}-{kind}"),
        mutation=mutation,
        template=template,
        environ=environ,
    )


def _cmd_app_add(
    config: AppConfig, args: argparse.Namespace, *, environ: Mapping[str, str]
) -> None:
    if not args.version:
        raise MissingOption("version")
    repo = resolve_repository(args.repo, cwd=Path.cwd())
    chart_repo = ChartRepository(
        url=args.repository, username=args.username, password=args.password
    )
    schema = (
        load_values_schema(args.schema, username=args.username, password=args.password)
        if args.schema
        else None
    )
    store = vault_store_from_env(config.vault, environ) if config.vault is not None else None
    scope = SecretScope.team(args.team) if args.team else SecretScope.gitops(repo)
    mutation = new_manifest_mutation(
        args.name,
        args.version,
        chart_repo,
        schema,
        materializer=SecretMaterializer(store=store, scope=scope),
        alias=args.alias,
        values_file=args.values,
        answers=parse_set_answers(args.answers),
    )
    template = PullRequestTemplate(
        title=f"Add {args.name} {args.version}",
        body=f"Add app {args.name} {args.version}",
        subject=args.name,
        version=args.version,
        base_branch=args.base,
        source_repo_url=args.repository,
    )
    _propose(
        config,
        args,
        repo=repo,
        scheme=BranchScheme(ADD_APP_BRANCH_PREFIX),
        mutation=mutation,
        template=template,
        environ=environ,
    )


def _propose(
    config: AppConfig,
    args: argparse.Namespace,
    *,
    repo: RepositoryReference,
    scheme: BranchScheme,
    mutation: MutationStrategy,
    template: PullRequestTemplate,
    environ: Mapping[str, str],
) -> PullRequestHandle | None:
    gateway = resolve_provider(repo, config, batch_mode=args.batch, environ=environ)
    orchestrator = PullRequestOrchestrator(config, gateway)
    handle = orchestrator.execute(repo, scheme, mutation, template)
    if handle is None:
        print("No changes to propose")
        return None
    print(handle.url or f"#{handle.number}")
    if args.wait_seconds:
        status = orchestrator.await_merge(repo, handle, timeout_seconds=args.wait_seconds)
        print(f"{status.state} (build: {status.build_state})")
    return handle


def _add_batch_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-b",
        "--batch",
        action="store_true",
        help="Never prompt; fail when credentials are missing",
    )


def _add_wait_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--wait-seconds",
        type=float,
        default=0.0,
        help="Wait up to this long for the pull request to be merged or closed",
    )


def _verbose_mode(count: int) -> str | None:
    if count <= 0:
        return None
    return "low" if count == 1 else "high"
