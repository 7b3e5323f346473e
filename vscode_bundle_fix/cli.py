"""Entry point for the vscode-bundle-fix command line tool."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, NoReturn, Optional

from rich.console import Console
from rich.logging import RichHandler

from .commands import ensure_macos, require_commands, required_commands
from .diagnostics import Report, codesign_log_path, diagnose
from .errors import BundleFixError, RepairError
from .formatting import format_report, render_rich, to_json
from .repair import repair
from .target import Channel, RunOptions, resolve_target

logger = logging.getLogger(__name__)

EPILOG = """\
examples:
  %(prog)s check
  %(prog)s check --insiders
  %(prog)s fix
  %(prog)s fix --app "/Applications/Visual Studio Code - Insiders.app"
  %(prog)s fix --insiders --no-kill
"""


class UsageParser(argparse.ArgumentParser):
    """Report usage errors with the full help of the parser involved."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.subcommands: Dict[str, argparse.ArgumentParser] = {}

    def parse_args(self, args=None, namespace=None):
        parsed, extras = self.parse_known_args(args, namespace)
        if extras:
            # unknown options belong to the selected subcommand
            parser = self.subcommands.get(getattr(parsed, "command", None), self)
            parser.error(f"unrecognized arguments: {' '.join(extras)}")
        return parsed

    def error(self, message: str) -> NoReturn:
        sys.stderr.write(f"ERROR: {message}\n\n")
        self.print_help(sys.stderr)
        self.exit(2)


def build_parser() -> UsageParser:
    common = argparse.ArgumentParser(add_help=False)
    channel = common.add_mutually_exclusive_group()
    channel.add_argument(
        "--stable",
        dest="channel",
        action="store_const",
        const=Channel.STABLE,
        help="target the stable bundle (default)",
    )
    channel.add_argument(
        "--insiders",
        dest="channel",
        action="store_const",
        const=Channel.INSIDERS,
        help="target the Insiders bundle",
    )
    common.add_argument("--app", type=Path, metavar="PATH", help="explicit .app bundle path; channel follows its bundle id")
    common.add_argument("--no-kill", action="store_true", help="do not quit/kill running VS Code during repair")
    common.add_argument("--verbose", action="store_true", help="print extra details (xattrs, file flags, helpers)")
    common.add_argument(
        "--on-survivor",
        choices=("proceed", "abort"),
        default="proceed",
        help="what repair does if VS Code survives forced termination (default: proceed)",
    )
    output = common.add_mutually_exclusive_group()
    output.add_argument("--json", dest="output", action="store_const", const="json", help="print the report as JSON")
    output.add_argument("--ui", dest="output", action="store_const", const="ui", help="render the report with Rich")
    common.set_defaults(channel=Channel.STABLE, output="text")

    parser = UsageParser(
        prog="vscode-bundle-fix",
        description="Diagnose and repair a VS Code bundle on macOS that cannot update itself.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="{diagnose,repair}", parser_class=UsageParser)
    subparsers.required = True
    subparsers.add_parser(
        "diagnose",
        aliases=["check"],
        parents=[common],
        help="print diagnostics without modifying anything",
    ).set_defaults(mode="diagnose")
    subparsers.add_parser(
        "repair",
        aliases=["fix"],
        parents=[common],
        help="attempt to unlock the bundle (may prompt for sudo)",
    ).set_defaults(mode="repair")
    parser.subcommands = dict(subparsers.choices)
    return parser


def options_from_args(args: argparse.Namespace) -> RunOptions:
    return RunOptions(
        channel=args.channel,
        app_path=args.app,
        no_kill=args.no_kill,
        verbose=args.verbose,
        abort_on_survivor=args.on_survivor == "abort",
        output=args.output,
    )


def setup_logging(verbose: bool) -> None:
    handler = RichHandler(console=Console(stderr=True), show_time=False, show_path=False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    options = options_from_args(args)
    setup_logging(options.verbose)

    try:
        ensure_macos()
        require_commands(required_commands(args.mode))
        target = resolve_target(options.channel, options.app_path)
        logger.debug("target: %s", target.as_dict())
        log_path = codesign_log_path(target)
        if args.mode == "repair":
            report = repair(target, options, log_path=log_path)
        else:
            report = diagnose(target, options, log_path=log_path)
    except RepairError as exc:
        if exc.report is not None:
            _emit(exc.report, options.output)
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except BundleFixError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted by user", file=sys.stderr)
        return 130

    _emit(report, options.output)
    return 0


def _emit(report: Report, output: str) -> None:
    if output == "json":
        print(to_json(report))
    elif output == "ui":
        render_rich(report, Console())
    else:
        print(format_report(report))


if __name__ == "__main__":
    raise SystemExit(main())
