#!/usr/bin/env python3
"""rally CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from rally.lib.config import load_config
from rally.lib.validate import ValidationError
from rally.commands import run as cmd_run_module
from rally.commands import show as cmd_show_module


def _load_config(args):
    try:
        return load_config(Path(args.config).expanduser() if args.config else None)
    except ValidationError as e:
        print(f"ERROR: Invalid config: {e}")
        sys.exit(2)


def cmd_run(args):
    return cmd_run_module.cmd_run(args, _load_config(args))


def cmd_show(args):
    return cmd_show_module.cmd_show(args)


def main():
    parser = argparse.ArgumentParser(prog='rally', description='Reviewer/reviewee agent rally on a pull request')
    parser.add_argument('--config', '-c', help='Config file (default: $XDG_CONFIG_HOME/rally/config.yaml)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging and agent activity')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # rally run
    p_run = subparsers.add_parser('run', help='Run a rally')
    p_run.add_argument('--repo', '-R', help='Repository as owner/name')
    p_run.add_argument('--pr', type=int, help='Pull request number')
    p_run.add_argument('--local', action='store_true', help='Review local changes; never post to GitHub')
    p_run.add_argument('--base', default='main', help='Base branch for --local diffs (default: main)')
    p_run.add_argument('--working-dir', '-C', help='Checkout the agents work in (default: cwd)')
    p_run.add_argument('--reviewer', help='Reviewer agent (claude, codex)')
    p_run.add_argument('--reviewee', help='Reviewee agent (claude, codex)')
    p_run.add_argument('--max-rounds', type=int, help='Reviewer turns before giving up')
    p_run.add_argument('--timeout', type=int, help='Seconds allowed per agent call')
    p_run.add_argument('--budget', type=int, help='Seconds allowed for the whole rally')
    p_run.add_argument('--prompt-dir', help='Directory with prompt template overrides')
    p_run.add_argument('--no-save', action='store_true', help='Do not persist the session')
    p_run.set_defaults(func=cmd_run)

    # rally show
    p_show = subparsers.add_parser('show', help='Show a saved rally')
    p_show.add_argument('--repo', '-R', required=True, help='Repository as owner/name')
    p_show.add_argument('--pr', type=int, required=True, help='Pull request number')
    p_show.set_defaults(func=cmd_show)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
