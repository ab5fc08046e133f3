"""Argument parsing functionality for nuiget."""

import argparse
from constants import BulkAction, Constants


def _add_common(parser):
    """Flags shared by every command."""
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to YAML configuration file",
                        action="store",
                        type=str)
    parser.add_argument("-w", "--workspace",
                        dest="WORKSPACE",
                        help="Workspace root used for nuget.config lookup and the cache file",
                        action="store",
                        type=str)
    parser.add_argument("--json",
                        dest="JSON",
                        help="Print results as JSON",
                        action="store_true")
    parser.add_argument("--timeout",
                        dest="TIMEOUT",
                        help="Per-request timeout in seconds",
                        action="store",
                        type=float)
    parser.add_argument("--no-http2",
                        dest="NO_HTTP2",
                        help="Send every request over the pooled HTTP/1.1 session",
                        action="store_true")
    parser.add_argument("--concurrency",
                        dest="CONCURRENCY",
                        help="Maximum parallel per-package lookups",
                        action="store",
                        type=int)
    parser.add_argument("--no-cache",
                        dest="NO_CACHE",
                        help="Do not read or write the workspace cache file",
                        action="store_true")


def _add_query(parser, take_default):
    parser.add_argument("-s", "--source",
                        dest="SOURCE",
                        help="Source name or URL (default: all enabled sources)",
                        action="append",
                        type=str)
    parser.add_argument("--prerelease",
                        dest="PRERELEASE",
                        help="Include prerelease versions",
                        action="store_true")
    parser.add_argument("--take",
                        dest="TAKE",
                        help="Maximum number of results",
                        action="store",
                        type=int,
                        default=take_default)


def build_parser():
    """Build the top-level parser and its subcommands."""
    parser = argparse.ArgumentParser(
        prog="nuiget",
        description="nuiget - NuGet package source client",
        add_help=True,
    )
    commands = parser.add_subparsers(dest="COMMAND", metavar="COMMAND")
    commands.required = True

    cmd = commands.add_parser("versions", help="List versions of a package, newest first")
    cmd.add_argument("PACKAGE_ID", help="Package id")
    _add_query(cmd, Constants.DEFAULT_VERSIONS_TAKE)

    cmd = commands.add_parser("search", help="Search packages across sources")
    cmd.add_argument("QUERY", help="Search text")
    _add_query(cmd, Constants.DEFAULT_SEARCH_TAKE)
    cmd.add_argument("--skip",
                     dest="SKIP",
                     help="Results to skip",
                     action="store",
                     type=int,
                     default=0)

    cmd = commands.add_parser("autocomplete", help="Suggest package ids")
    cmd.add_argument("QUERY", help="Id prefix")
    _add_query(cmd, Constants.DEFAULT_AUTOCOMPLETE_TAKE)

    cmd = commands.add_parser("info", help="Show metadata for a package version")
    cmd.add_argument("PACKAGE_ID", help="Package id")
    cmd.add_argument("VERSION", help="Package version")
    cmd.add_argument("-s", "--source",
                     dest="SOURCE",
                     help="Source name or URL",
                     action="append",
                     type=str)
    cmd.add_argument("--readme",
                     dest="README",
                     help="Also print the embedded readme",
                     action="store_true")

    commands.add_parser("sources", help="List configured package sources")

    cmd = commands.add_parser("installed", help="List packages referenced by a project")
    cmd.add_argument("PROJECT", help="Path to the .csproj")

    cmd = commands.add_parser("outdated", help="List installed packages with newer versions")
    cmd.add_argument("PROJECT", help="Path to the .csproj")
    cmd.add_argument("--prerelease",
                     dest="PRERELEASE",
                     help="Consider prerelease versions",
                     action="store_true")

    cmd = commands.add_parser("transitive", help="Show transitive packages and who pulls them in")
    cmd.add_argument("PROJECT", help="Path to the .csproj")

    cmd = commands.add_parser("order", help="Print a dependency-safe order for a bulk action")
    cmd.add_argument("ACTION", choices=[a.value for a in BulkAction], help="Bulk action")
    cmd.add_argument("PROJECT", help="Path to the .csproj")
    cmd.add_argument("PACKAGES", nargs="+", help="Package ids")

    cmd = commands.add_parser(BulkAction.REMOVE.value, help="Remove packages in dependency order")
    cmd.add_argument("PROJECT", help="Path to the .csproj")
    cmd.add_argument("PACKAGES", nargs="+", help="Package ids")

    cmd = commands.add_parser(BulkAction.UPDATE.value, help="Update packages in dependency order")
    cmd.add_argument("PROJECT", help="Path to the .csproj")
    cmd.add_argument("PACKAGES", nargs="+", help="ID@VERSION pairs")

    cmd = commands.add_parser("clear-cache", help="Drop cached registry data")
    cmd.add_argument("--persisted",
                     dest="PERSISTED",
                     help="Also clear the workspace cache file",
                     action="store_true")

    for sub in commands.choices.values():
        _add_common(sub)
    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
