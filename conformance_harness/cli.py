"""CLI entry point for the conformance harness."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from aiohttp import web

from conformance_harness.aggregator import final_result, group_results, latest_results
from conformance_harness.callback_keys import CallbackKeys, CallbackLinks
from conformance_harness.callbacks import CallbackHandler, create_app
from conformance_harness.config import HarnessConfig, load_config
from conformance_harness.http import LoggedClient
from conformance_harness.models.result import SequenceResult
from conformance_harness.orchestrator import SequenceOrchestrator
from conformance_harness.progress import ProgressBus, log_progress
from conformance_harness.repository.base import ResultNotFoundError
from conformance_harness.repository.file import FileRepository
from conformance_harness.runner import NoPendingWaitError
from conformance_harness.suites.loading import load_suite_manifest
from conformance_harness.suites.manifest import SuiteManifest
from conformance_harness.validation.definitions import Definitions, base_terminology
from conformance_harness.validation.loader import (
    ProfileLoadError,
    load_directory,
    load_profile,
    read_resource,
)
from conformance_harness.validation.validator import StructureValidator

STATUS_SYMBOLS = {
    "pass": "✅",
    "fail": "❌",
    "error": "❗",
    "skip": "⏭️",
    "todo": "📝",
    "wait": "⏳",
    "cancel": "🚫",
}

FAILING_STATUSES = frozenset({"fail", "error", "cancel"})


def log_results_summary(
    log: logging.Logger, sequence_results: Sequence[SequenceResult]
) -> None:
    """Log a formatted summary of test results."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for sequence_result in sequence_results:
        log.info(
            "%s %s: %s",
            STATUS_SYMBOLS.get(sequence_result.status, "?"),
            sequence_result.name,
            sequence_result.status,
        )
        for test_result in sequence_result.test_results:
            symbol = STATUS_SYMBOLS.get(test_result.status, "?")
            log.info("  %s %s %s", symbol, test_result.id, test_result.name)
            if test_result.message:
                log.info("    Message: %s", test_result.message)
            for warning in test_result.warnings:
                log.info("    Warning: %s", warning)
        if sequence_result.redirect_to:
            log.info("  Visit to continue: %s", sequence_result.redirect_to)


def format_output(sequence_results: Sequence[SequenceResult]) -> dict[str, Any]:
    """Format sequence results for JSON output."""
    tests = [
        test_result
        for sequence_result in sequence_results
        for test_result in sequence_result.test_results
    ]
    return {
        "total": len(tests),
        "passed": sum(1 for t in tests if t.status == "pass"),
        "failed": sum(1 for t in tests if t.status == "fail"),
        "errors": sum(1 for t in tests if t.status == "error"),
        "skipped": sum(1 for t in tests if t.status == "skip"),
        "waiting": sum(1 for t in tests if t.status == "wait"),
        "sequences": [result.summary() for result in sequence_results],
    }


def exit_code(sequence_results: Sequence[SequenceResult]) -> int:
    has_failures = any(
        result.status in FAILING_STATUSES for result in sequence_results
    )
    return 1 if has_failures else 0


def callback_links(config: HarnessConfig) -> CallbackLinks:
    return CallbackLinks(
        keys=CallbackKeys(secret=config.callback_secret),
        base_url=config.callback_base_url,
    )


def plan_sequences(
    manifest: SuiteManifest,
    sequences: Sequence[str],
    test_set_id: str | None,
) -> tuple[list[str], str | None]:
    """Sequence names to run, and the test set they come from, if any."""
    if sequences:
        return list(sequences), test_set_id

    test_set = (
        manifest.test_set(test_set_id)
        if test_set_id
        else next(iter(manifest.test_sets), None)
    )
    if test_set is None:
        return [sequence.name for sequence in manifest.registry.sequences()], None

    names = [
        test_case.sequence
        for group in test_set.groups
        for test_case in group.test_cases
    ]
    return names, test_set.id


async def run(
    suite_key: str,
    config: HarnessConfig,
    instance_id: str,
    sequences: Sequence[str] = (),
    test_set_id: str | None = None,
) -> int:
    """Run sequences for a testing instance and return exit code."""
    log = logging.getLogger("conformance_harness")

    log.info("Loading suite: %s", suite_key)
    manifest = load_suite_manifest(suite_key)
    names, test_set_id = plan_sequences(manifest, sequences, test_set_id)

    repository = FileRepository(root=config.data_dir)
    context = await repository.load_context(instance_id)
    context.merge(config.initial_context().to_dict())
    await repository.save_context(instance_id, context)

    log.info("Running %d sequence(s) for instance %s", len(names), instance_id)
    async with LoggedClient.create(timeout=config.request_timeout) as client:
        orchestrator = SequenceOrchestrator(
            registry=manifest.registry,
            repository=repository,
            client=client,
            observer=log_progress,
            links=callback_links(config),
            test_sets=manifest.test_sets,
        )
        results = await orchestrator.run_sequences(
            instance_id, names, test_set_id=test_set_id
        )

    log_results_summary(log, results)
    print(json.dumps(format_output(results), indent=2))
    return exit_code(results)


async def resume(
    suite_key: str,
    config: HarnessConfig,
    result_id: str,
    params: Mapping[str, str],
) -> int:
    """Resume a waiting sequence result with callback parameters."""
    log = logging.getLogger("conformance_harness")
    manifest = load_suite_manifest(suite_key)
    repository = FileRepository(root=config.data_dir)

    async with LoggedClient.create(timeout=config.request_timeout) as client:
        orchestrator = SequenceOrchestrator(
            registry=manifest.registry,
            repository=repository,
            client=client,
            observer=log_progress,
            links=callback_links(config),
            test_sets=manifest.test_sets,
        )
        try:
            results = await orchestrator.resume(result_id, dict(params))
        except (NoPendingWaitError, ResultNotFoundError) as e:
            log.error("Cannot resume %s: %s", result_id, e)
            return 2

    log_results_summary(log, results)
    print(json.dumps(format_output(results), indent=2))
    return exit_code(results)


async def cancel(suite_key: str, config: HarnessConfig, result_id: str) -> int:
    log = logging.getLogger("conformance_harness")
    manifest = load_suite_manifest(suite_key)
    orchestrator = SequenceOrchestrator(
        registry=manifest.registry, repository=FileRepository(root=config.data_dir)
    )
    try:
        result = await orchestrator.cancel(result_id)
    except ResultNotFoundError as e:
        log.error("Cannot cancel %s: %s", result_id, e)
        return 2

    print(json.dumps(format_output([result]), indent=2))
    return 0


async def status(
    suite_key: str,
    config: HarnessConfig,
    instance_id: str,
    test_set_id: str | None = None,
) -> int:
    """Print the latest results and group statuses of an instance."""
    manifest = load_suite_manifest(suite_key)
    repository = FileRepository(root=config.data_dir)
    results = await repository.results_for_instance(instance_id)
    context = await repository.load_context(instance_id)

    test_set = (
        manifest.test_set(test_set_id)
        if test_set_id
        else next(iter(manifest.test_sets), None)
    )
    groups = group_results(test_set, results, context) if test_set else []
    overall = final_result(manifest.registry, results)

    print(
        json.dumps(
            {
                "instance_id": instance_id,
                "final_result": overall,
                "sequences": [
                    result.summary() for result in latest_results(results).values()
                ],
                "groups": [
                    {
                        "id": group.group.id,
                        "name": group.group.name,
                        "status": group.status,
                        "counts": dict(group.counts),
                        "missing_variables": list(group.missing_variables),
                    }
                    for group in groups
                ],
            },
            indent=2,
        )
    )
    return 0 if overall == "pass" else 1


def validate(
    profile_path: Path, resource_path: Path, definitions_dir: Path | None = None
) -> int:
    """Validate a resource file against a StructureDefinition file."""
    log = logging.getLogger("conformance_harness")
    definitions = Definitions.with_base_types()
    terminology = base_terminology()
    try:
        if definitions_dir is not None:
            load_directory(definitions_dir, definitions, terminology)
        profile = load_profile(profile_path)
        resource = read_resource(resource_path)
    except ProfileLoadError as e:
        log.error("%s", e)
        return 2

    validator = StructureValidator(definitions=definitions, terminology=terminology)
    finding = validator.validate(resource, profile)
    print(
        json.dumps(
            {
                "profile": profile.url,
                "errors": finding.errors,
                "warnings": finding.warnings,
                "information": finding.information,
            },
            indent=2,
        )
    )
    return 0 if finding.ok else 1


def serve(suite_key: str, config: HarnessConfig, host: str, port: int) -> None:
    manifest = load_suite_manifest(suite_key)
    bus = ProgressBus()
    handler = CallbackHandler(
        registry=manifest.registry,
        repository=FileRepository(root=config.data_dir),
        links=callback_links(config),
        observer=bus,
        test_sets=manifest.test_sets,
    )
    web.run_app(
        create_app(handler, request_timeout=config.request_timeout, bus=bus),
        host=host,
        port=port,
    )


def parse_params(values: Sequence[str]) -> dict[str, str]:
    """Parse repeated ``key=value`` arguments."""
    params: dict[str, str] = {}
    for value in values:
        key, separator, item = value.partition("=")
        if not separator or not key:
            raise argparse.ArgumentTypeError(f"Expected key=value, got '{value}'")
        params[key] = item
    return params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run conformance tests against a FHIR server"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_suite_options(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "--suite", default="smart", help="Suite key (default: smart)"
        )
        subparser.add_argument(
            "--config",
            required=True,
            help="Inline JSON configuration or path to a JSON/YAML file",
        )

    run_parser = subparsers.add_parser("run", help="Run sequences for an instance")
    add_suite_options(run_parser)
    run_parser.add_argument("--instance", required=True, help="Testing instance id")
    run_parser.add_argument(
        "--sequence",
        action="append",
        default=[],
        help="Sequence to run; repeat for several (default: the whole test set)",
    )
    run_parser.add_argument("--test-set", help="Test set to run")

    resume_parser = subparsers.add_parser("resume", help="Resume a waiting sequence")
    add_suite_options(resume_parser)
    resume_parser.add_argument("--result-id", required=True)
    resume_parser.add_argument(
        "--param",
        action="append",
        default=[],
        help="Callback parameter as key=value; repeat for several",
    )

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a sequence result")
    add_suite_options(cancel_parser)
    cancel_parser.add_argument("--result-id", required=True)

    status_parser = subparsers.add_parser("status", help="Show instance results")
    add_suite_options(status_parser)
    status_parser.add_argument("--instance", required=True)
    status_parser.add_argument("--test-set")

    validate_parser = subparsers.add_parser(
        "validate", help="Validate a resource against a profile"
    )
    validate_parser.add_argument("--profile", type=Path, required=True)
    validate_parser.add_argument("--resource", type=Path, required=True)
    validate_parser.add_argument(
        "--definitions",
        type=Path,
        help="Directory of StructureDefinition and ValueSet files",
    )

    serve_parser = subparsers.add_parser("serve", help="Serve the callback endpoint")
    add_suite_options(serve_parser)
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=4567)

    return parser


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if args.command == "validate":
        sys.exit(validate(args.profile, args.resource, args.definitions))

    config = load_config(args.config)
    match args.command:
        case "run":
            code = asyncio.run(
                run(args.suite, config, args.instance, args.sequence, args.test_set)
            )
        case "resume":
            try:
                params = parse_params(args.param)
            except argparse.ArgumentTypeError as e:
                parser.error(str(e))
            code = asyncio.run(resume(args.suite, config, args.result_id, params))
        case "cancel":
            code = asyncio.run(cancel(args.suite, config, args.result_id))
        case "status":
            code = asyncio.run(
                status(args.suite, config, args.instance, args.test_set)
            )
        case "serve":
            serve(args.suite, config, args.host, args.port)
            code = 0
        case _:
            parser.error(f"Unknown command {args.command}")
    sys.exit(code)


if __name__ == "__main__":  # pragma: no cover
    main()
