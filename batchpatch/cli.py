import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dulwich.refs import check_ref_format

from .config import (
    DEFAULT_COMMIT_MESSAGE,
    DEFAULT_PR_BODY,
    DEFAULT_PR_TITLE,
    AppConfig,
    CloneMode,
    RunConfig,
    change_source_from_args,
    load_app_config,
)
from .errors import BatchpatchError, InputError
from .logging_config import configure_logging
from .report import describe_state
from .state_store import FileStateStore, StateFileLock
from .targets import read_repo_list
from .workflow import run_workflow

logger = logging.getLogger(__name__)

EXIT_USAGE = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="batchpatch",
        description="Apply one change to many repositories and open a pull request for each.",
    )
    parser.add_argument("--config-file", required=True, help="JSON file holding the access token")
    parser.add_argument("--state-file", required=True, help="Run state; created if absent")
    parser.add_argument("--repo-list", required=True, help="One owner/name per line")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in CloneMode],
        default=CloneMode.SSH.value,
        help="Clone transport (default: ssh)",
    )
    parser.add_argument("--branch", required=True)
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--patch-file", help="Unified diff applied with patch -p1")
    source.add_argument(
        "--patch-script", help="Executable run with the checkout as working directory"
    )
    parser.add_argument("--commit-message", default=DEFAULT_COMMIT_MESSAGE)
    parser.add_argument(
        "--no-push",
        action="store_true",
        help="Stop after committing; push and pull request are left for a later run",
    )
    parser.add_argument("--pr-title", default=DEFAULT_PR_TITLE)
    parser.add_argument("--pr-body", default=DEFAULT_PR_BODY)
    parser.add_argument("--working-dir", default=".repos")
    parser.add_argument("--jobs", type=int, default=1, help="Repositories processed concurrently")
    parser.add_argument(
        "--script-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the patch command (default: no limit)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    return parser.parse_args(argv)


def build_run_config(args: argparse.Namespace, app_config: AppConfig) -> RunConfig:
    branch = args.branch.strip()
    if not branch or not check_ref_format(f"refs/heads/{branch}".encode()):
        raise InputError(f"Invalid branch name: {args.branch!r}")
    if args.jobs < 1:
        raise InputError("--jobs must be at least 1")
    if args.script_timeout is not None and args.script_timeout <= 0:
        raise InputError("--script-timeout must be positive")

    ssh_key = app_config.git_ssh_key_path
    return RunConfig(
        branch=branch,
        change_source=change_source_from_args(args.patch_file, args.patch_script),
        working_dir=Path(args.working_dir).expanduser().resolve(),
        commit_message=args.commit_message,
        mode=CloneMode(args.mode),
        github_token=app_config.github_access_token,
        ssh_key_path=Path(ssh_key).expanduser() if ssh_key else None,
        pr_title=args.pr_title,
        pr_body=args.pr_body,
        no_push=args.no_push,
        script_timeout=args.script_timeout,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, force=True)
    state_path = Path(args.state_file)
    try:
        app_config = load_app_config(Path(args.config_file))
        config = build_run_config(args, app_config)
        targets = read_repo_list(Path(args.repo_list))
        with StateFileLock(state_path):
            store = FileStateStore.load(state_path)
            report = asyncio.run(run_workflow(targets, store, config, jobs=args.jobs))
    except BatchpatchError as exc:
        logger.error("%s", exc)
        print(f"batchpatch: {exc}", file=sys.stderr)
        return EXIT_USAGE

    for line in report.summary_lines():
        print(line)
    return report.exit_code


def parse_status_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="batchpatch-status", description="Summarize a batchpatch state file."
    )
    parser.add_argument("--state-file", required=True)
    return parser.parse_args(argv)


def status_main(argv: Optional[List[str]] = None) -> int:
    args = parse_status_args(argv)
    configure_logging("WARNING", force=True)
    try:
        store = FileStateStore.load(Path(args.state_file))
    except BatchpatchError as exc:
        print(f"batchpatch-status: {exc}", file=sys.stderr)
        return EXIT_USAGE
    for line in describe_state(store.snapshot()):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
