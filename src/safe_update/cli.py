"""
Command-line interface for safe-update.

Usage:
    safe-update [--config PATH] [--log-level LEVEL] [--debug] update MODULE VERSION [--approve]
    safe-update [...] batch FILE [--stop-on-error]
    safe-update [...] evaluate [MODULE]

Results are printed to stdout as JSON. Exit codes for `update`:
0 success, 2 rejected (approval needed), 3 validation failed, 4 rolled back,
5 rollback failed (manual intervention required).
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from safe_update import __version__
from safe_update.config import AppConfig, load_config
from safe_update.errors import UpdateError
from safe_update.logging import get_logger, setup_logging
from safe_update.updater import ModuleUpdater
from safe_update.updates.batch import BatchResult, UpdateRequest
from safe_update.updates.state_machine import OutcomeKind

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_REJECTED = 2
EXIT_VALIDATION_FAILED = 3
EXIT_ROLLED_BACK = 4
EXIT_FATAL = 5

OUTCOME_EXIT_CODES: dict[OutcomeKind, int] = {
    OutcomeKind.SUCCESS: EXIT_OK,
    OutcomeKind.REJECTED_NEEDS_APPROVAL: EXIT_REJECTED,
    OutcomeKind.VALIDATION_FAILED: EXIT_VALIDATION_FAILED,
    OutcomeKind.ROLLED_BACK: EXIT_ROLLED_BACK,
    OutcomeKind.FATAL_MANUAL_INTERVENTION_REQUIRED: EXIT_FATAL,
}


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="safe-update",
        description="Safe, reversible module updates gated by quality scores",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    update_parser = subparsers.add_parser("update", help="Update one module")
    update_parser.add_argument("module", help="Module path relative to the repository root")
    update_parser.add_argument("version", help="Target version tag")
    update_parser.add_argument(
        "--approve",
        action="store_true",
        help="Approve minor and major updates",
    )

    batch_parser = subparsers.add_parser("batch", help="Update modules listed in a file")
    batch_parser.add_argument("file", help="YAML or JSON list of update requests")
    batch_parser.add_argument(
        "--stop-on-error",
        action="store_true",
        default=None,
        help="Halt after the first failed update",
    )

    evaluate_parser = subparsers.add_parser(
        "evaluate", help="Score a module, or every submodule when none is given"
    )
    evaluate_parser.add_argument(
        "module", nargs="?", help="Module path relative to the repository root"
    )

    return parser


def _config_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if parsed.log_level:
        overrides["logging"] = {"level": parsed.log_level}
    if parsed.debug:
        overrides["logging"] = {"level": "debug"}
    return overrides


def load_requests(path: Path) -> list[UpdateRequest]:
    """
    Load batch requests from a YAML or JSON file.

    The file holds a list of {module, target_version, approved} mappings,
    optionally under an `updates` key. `version` is accepted for
    target_version.

    Raises:
        ValueError: If the file does not hold a list of requests.
    """
    with open(path) as f:
        data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("updates")
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of update requests")

    requests = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"Invalid update request in {path}: {item!r}")
        if "target_version" not in item and "version" in item:
            item = {**item, "target_version": item["version"]}
            del item["version"]
        requests.append(UpdateRequest(**item))
    return requests


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def batch_exit_code(result: BatchResult) -> int:
    """Return the exit code for a batch result."""
    if result.fatal:
        return EXIT_FATAL
    if result.failed:
        return EXIT_FAILURE
    return EXIT_OK


def run(parsed: argparse.Namespace, config: AppConfig) -> int:
    """Execute a parsed command and return the exit code."""
    updater = ModuleUpdater(config)

    if parsed.command == "update":
        outcome = updater.update(parsed.module, parsed.version, approved=parsed.approve)
        _print_json(outcome.model_dump(mode="json"))
        return OUTCOME_EXIT_CODES[outcome.kind]

    if parsed.command == "batch":
        requests = load_requests(Path(parsed.file))
        result = updater.batch_update(requests, stop_on_error=parsed.stop_on_error)
        payload = result.model_dump(mode="json")
        payload["summary"] = result.summary()
        _print_json(payload)
        return batch_exit_code(result)

    if parsed.module is None:
        summary = updater.evaluate_all()
        _print_json(summary.model_dump(mode="json"))
        return EXIT_OK if summary.can_deploy else EXIT_FAILURE

    report = updater.evaluate(parsed.module)
    _print_json(report.model_dump(mode="json"))
    return EXIT_OK if report.can_deploy else EXIT_FAILURE


def main(argv: list[str] | None = None) -> int:
    """
    Console entry point.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    parsed = parser.parse_args(argv)

    try:
        config = load_config(parsed.config, overrides=_config_overrides(parsed))
    except (FileNotFoundError, yaml.YAMLError, PydanticValidationError) as e:
        print(f"safe-update: invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(config.logging)
    logger.debug("Configuration loaded", extra={"command": parsed.command})

    try:
        return run(parsed, config)
    except UpdateError as e:
        logger.error(f"{parsed.command} failed: {e.message}", extra={"error_code": e.error_code})
        print(json.dumps({"error": e.to_dict()}, indent=2, default=str), file=sys.stderr)
        return EXIT_FAILURE
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"{parsed.command} failed: {e}")
        print(f"safe-update: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
