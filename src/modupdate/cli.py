"""
Module Update Manager - Command Line Interface
Entry point for scan, check and update runs.
"""

import argparse
import json
import sys
from pathlib import Path
import logging

from modupdate import __version__
from modupdate.core.engine import DEFAULT_CONFIG_PATH, FatalPreconditionError, UpdateEngine
from modupdate.core.logging_setup import configure_logging
from modupdate.core.pipeline import approve_all
from modupdate.core.report import format_summary, write_json_report
from modupdate.core.resolver import UpdateDecision

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="mum",
        description="Module Update Manager - keep installed modules current in every location",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config",
                        dest="config",
                        help=f"Configuration file (default: {DEFAULT_CONFIG_PATH})",
                        type=Path,
                        default=DEFAULT_CONFIG_PATH)
    parser.add_argument("-r", "--root",
                        dest="roots",
                        help="Module search root; repeat for several (default: PSModulePath)",
                        action="append")
    parser.add_argument("-v", "--verbose",
                        help="Increase output detail (-vv for debug)",
                        action="count",
                        default=0)
    parser.add_argument("--loglevel",
                        dest="log_level",
                        help="Explicit log level",
                        choices=["debug", "verbose", "info", "success", "warning", "error"])
    parser.add_argument("--logfile",
                        dest="log_file",
                        help="Also write the log to this file",
                        type=Path)

    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="List installed modules and their locations")
    _add_selection_args(scan)
    scan.add_argument("--json", action="store_true", help="Print the inventory as JSON")

    check = sub.add_parser("check", help="Show which modules have updates available")
    _add_selection_args(check)
    _add_policy_args(check)
    check.add_argument("--json", action="store_true", help="Print the decisions as JSON")
    check.add_argument("-a", "--all", dest="show_current", action="store_true",
                       help="Also list modules that are up to date")

    update = sub.add_parser("update", help="Install available updates")
    _add_selection_args(update)
    _add_policy_args(update)
    update.add_argument("--clean", dest="clean", action="store_true", default=None,
                        help="Remove superseded versions after updating")
    update.add_argument("--no-clean", dest="clean", action="store_false",
                        help="Keep superseded versions")
    update.add_argument("-y", "--yes", action="store_true",
                        help="Do not ask for confirmation")
    update.add_argument("-n", "--dry-run", dest="dry_run", action="store_true",
                        help="Show what would be installed without installing")
    update.add_argument("--report", type=Path,
                        help="Write a JSON report of the run to this file")

    ignore = sub.add_parser("ignore", help="Permanently leave modules out of scans and updates")
    ignore.add_argument("names", nargs="+", metavar="NAME",
                        help="Module name or wildcard pattern to add to the ignore list")

    return parser


def _add_selection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-i", "--ignore", action="append", default=[],
                        help="Name pattern to leave out of the inventory; repeatable")
    parser.add_argument("--include", action="append", default=[],
                        help="Only consider modules matching this pattern; repeatable")


def _add_policy_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--prerelease", dest="allow_prerelease", action="store_true", default=None,
                        help="Consider pre-release versions")
    parser.add_argument("--no-prerelease", dest="allow_prerelease", action="store_false",
                        help="Only consider stable versions")
    parser.add_argument("--match-author", dest="match_author", action="store_true", default=None,
                        help="Only update when the repository author matches the installed one")


def _overrides(args: argparse.Namespace, config: dict) -> dict:
    """CLI flags that replace configuration values."""
    overrides = {
        "search_roots": args.roots,
        "allow_prerelease": getattr(args, "allow_prerelease", None),
        "match_author": getattr(args, "match_author", None),
        "clean": getattr(args, "clean", None),
    }
    if getattr(args, "ignore", None):
        overrides["ignore"] = list(config.get("ignore") or []) + args.ignore
    if getattr(args, "include", None):
        overrides["include"] = args.include
    return overrides


def prompt_confirm(decision: UpdateDecision) -> bool:
    """Ask on the terminal whether to install one update."""
    locations = ", ".join(str(p) for p in decision.outdated_locations)
    question = (
        f"Update {decision.name} {decision.installed_version} -> {decision.target_version} "
        f"from {decision.repository} in {locations}? [y/N] "
    )
    try:
        answer = input(question)
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _decision_dict(decision: UpdateDecision) -> dict:
    return {
        "name": decision.name,
        "installed_version": str(decision.installed_version) if decision.installed_version else None,
        "target_version": str(decision.target_version),
        "repository": decision.repository,
        "author": decision.author,
        "outdated_locations": [str(p) for p in decision.outdated_locations],
    }


def cmd_scan(engine: UpdateEngine, args: argparse.Namespace) -> int:
    roots = [root for root in engine.search_roots if Path(root).is_dir()]
    if not roots:
        raise FatalPreconditionError(
            f"None of the search roots exist: {', '.join(engine.search_roots)}"
        )
    inventory = engine.scan()
    if args.json:
        print(json.dumps(inventory.to_dict(), indent=2))
        return EXIT_OK

    for name in inventory:
        for entry in inventory[name]:
            author = f"  [{entry.author}]" if entry.author else ""
            print(f"  {name:<40} {str(entry.version):<20} {entry.base_path}{author}")
    print(f"{len(inventory)} modules found")
    return EXIT_OK


def cmd_check(engine: UpdateEngine, args: argparse.Namespace) -> int:
    result = engine.run(check_only=True)
    if args.json:
        data = {
            "decisions": [_decision_dict(d) for d in result.decisions],
            "skipped": result.resolution.skipped,
            "errors": result.resolution.errors,
        }
        print(json.dumps(data, indent=2))
    else:
        print(format_summary(result.summary, show_current=args.show_current))
    return EXIT_OK


def cmd_update(engine: UpdateEngine, args: argparse.Namespace) -> int:
    confirm = approve_all if args.yes or args.dry_run else prompt_confirm
    result = engine.run(dry_run=args.dry_run, confirm=confirm)

    print(format_summary(result.summary))
    if args.report:
        write_json_report(args.report, result.summary, result.outcomes)
    return EXIT_OK if result.summary.success else EXIT_FAILURES


def cmd_ignore(engine: UpdateEngine, args: argparse.Namespace) -> int:
    for name in args.names:
        if engine.ignore_package(name):
            print(f"Ignoring {name}")
        else:
            print(f"{name} is already ignored")
    return EXIT_OK


COMMANDS = {
    "scan": cmd_scan,
    "check": cmd_check,
    "update": cmd_update,
    "ignore": cmd_ignore,
}


def main(argv=None) -> int:
    """Run the command line interface."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, log_file=args.log_file, log_level=args.log_level)

    engine = UpdateEngine(args.config)
    for key, value in _overrides(args, engine.config).items():
        if value is not None:
            engine.config[key] = value

    try:
        return COMMANDS[args.command](engine, args)
    except FatalPreconditionError as e:
        logger.error(str(e))
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return EXIT_FAILURES


if __name__ == "__main__":
    sys.exit(main())
