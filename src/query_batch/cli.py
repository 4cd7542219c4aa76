import argparse
import asyncio
import logging
import sys
from typing import IO, Any, Dict, List, Optional

from dotenv import load_dotenv

from query_batch.athena import AthenaQueryClient
from query_batch.config import (
    DEFAULT_SECTION,
    ConfigFileError,
    EncryptionOption,
    OutputFormat,
    Settings,
    load_settings,
)
from query_batch.errors import ValidationError
from query_batch.history import HistoryBrowser, SubstringFilter
from query_batch.orchestrator import Orchestrator
from query_batch.render import SafeWriter, Spinner, create_sink
from query_batch.statements import split_statements

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
S3_PREFIX = "s3://"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    """Build the ``query-batch`` argument parser."""
    parser = argparse.ArgumentParser(
        prog="query-batch", description="Run SQL statements on Amazon Athena concurrently"
    )
    parser.add_argument("--config", help="Path to the config file (default: ~/.query_batch/config)")
    parser.add_argument(
        "--section",
        "-s",
        default=DEFAULT_SECTION,
        help=f"Config file section to use (default: {DEFAULT_SECTION})",
    )
    parser.add_argument("--profile", "-p", help="AWS profile name")
    parser.add_argument("--region", "-r", help="AWS region")
    parser.add_argument(
        "--silent", action="store_true", default=None, help="Do not show progress messages"
    )
    parser.add_argument(
        "--debug", action="store_true", default=None, help="Turn on debug logging"
    )
    parser.add_argument(
        "--format",
        "-f",
        dest="output",
        choices=[fmt.value for fmt in OutputFormat],
        help="The formatting style for command output (default: table)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run Command
    run_parser = subparsers.add_parser("run", help="Run the SQL statements")
    run_parser.add_argument(
        "queries",
        nargs="*",
        help="SQL statements, separated by ';', or file://path arguments",
    )
    run_parser.add_argument("--database", "-d", help="The name of the database")
    run_parser.add_argument(
        "--location",
        "-l",
        help='The S3 location where query results are stored, e.g. "s3://bucket/prefix/"',
    )
    run_parser.add_argument("--workgroup", help="The Athena workgroup to run in")
    run_parser.add_argument(
        "--encrypt",
        choices=[option.value for option in EncryptionOption],
        help="Encryption option for query results",
    )
    run_parser.add_argument("--kms", help="KMS key ARN or ID for SSE_KMS/CSE_KMS")
    run_parser.add_argument(
        "--concurrent",
        type=int,
        help="The maximum number of concurrent query executions (default: 5)",
    )
    run_parser.add_argument(
        "--ordered",
        action="store_true",
        default=None,
        help="Show results in the order the statements were given",
    )

    # Show Command
    show_parser = subparsers.add_parser(
        "show", help="Show results of recent successful query executions"
    )
    show_parser.add_argument(
        "--count",
        "-c",
        type=int,
        help="The maximum number of executions to list (default: 50)",
    )
    show_parser.add_argument(
        "--filter",
        dest="terms",
        action="append",
        default=[],
        help="Only show executions containing this text (repeatable)",
    )
    show_parser.add_argument(
        "--concurrent",
        type=int,
        help="The maximum number of concurrent result fetches (default: 5)",
    )
    return parser


_OVERRIDE_KEYS = (
    "profile",
    "region",
    "silent",
    "debug",
    "output",
    "database",
    "location",
    "workgroup",
    "encrypt",
    "kms",
    "concurrent",
    "ordered",
    "count",
)


def _collect_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {key: getattr(args, key, None) for key in _OVERRIDE_KEYS}


def validate_location(settings: Settings) -> None:
    """Require an ``s3://`` output location for the ``run`` command."""
    logger.debug("Validating output location: %s", settings.location)
    if not settings.location.startswith(S3_PREFIX):
        raise ValidationError(
            f"valid `location` setting starting with '{S3_PREFIX}' is required for the `run` "
            "command. Specify it with --location/-l or add `location` to your config file.",
            field="location",
        )


def has_piped_input(stream: IO[str]) -> bool:
    """Return True when ``stream`` is not an interactive terminal."""
    try:
        return not stream.isatty()
    except (AttributeError, ValueError):
        return False


def collect_statements(
    queries: List[str], stdin: Optional[IO[str]], err: SafeWriter
) -> List[str]:
    """Split arguments and piped stdin text into statements."""
    args = list(queries)
    if stdin is not None and has_piped_input(stdin):
        logger.debug("Stdin has data; appending it to the arguments")
        try:
            args.append(stdin.read())
        except OSError as exc:
            err.write(f"Ignoring data on stdin since having failed to read: {exc}\n")

    def report(arg: str, exc: Exception) -> None:
        err.write(f"Error: failed to read {arg}: {exc}\n")

    return split_statements(args, on_error=report)


async def _run(settings: Settings, statements: List[str], out: SafeWriter, err: SafeWriter) -> int:
    client = AthenaQueryClient(region=settings.region, profile=settings.profile)
    spinner = Spinner(err)
    orchestrator = Orchestrator(client, create_sink(settings.output, out, err), [spinner])
    try:
        summary = await orchestrator.run(statements, settings.query_config())
    finally:
        await spinner.stop()
    if summary.message:
        out.write(summary.message + "\n")
    return EXIT_OK


async def _show(settings: Settings, terms: List[str], out: SafeWriter, err: SafeWriter) -> int:
    client = AthenaQueryClient(region=settings.region, profile=settings.profile)
    spinner = Spinner(err)
    browser = HistoryBrowser(client, create_sink(settings.output, out, err), [spinner])
    try:
        summary = await browser.browse(
            settings.count, settings.query_config(), SubstringFilter(terms)
        )
    finally:
        await spinner.stop()
    if summary.message:
        out.write(summary.message + "\n")
    return EXIT_OK


def main(
    argv: Optional[List[str]] = None,
    stdin: Optional[IO[str]] = None,
    stdout: Optional[IO[str]] = None,
    stderr: Optional[IO[str]] = None,
) -> int:
    """Run the query-batch CLI and return its exit code."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    stdin = sys.stdin if stdin is None else stdin
    out = SafeWriter(stdout or sys.stdout)
    err = SafeWriter(stderr or sys.stderr)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format=LOG_FORMAT,
    )

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    def warn_config(exc: ConfigFileError) -> None:
        if args.config:
            err.write(f"Warning: {exc}\n")

    try:
        settings = load_settings(
            args.config, args.section, _collect_overrides(args), on_file_error=warn_config
        )
        if args.command == "run":
            validate_location(settings)
            statements = collect_statements(args.queries, stdin, err)
            return asyncio.run(_run(settings, statements, out, err))
        return asyncio.run(_show(settings, args.terms, out, err))
    except ValueError as exc:
        err.write(f"Error: {exc}\n")
        return EXIT_USAGE
    except Exception as exc:
        logger.error(f"{args.command} failed: {exc}", exc_info=True)
        err.write(f"Error: {exc}\n")
        return EXIT_FAILURE


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
