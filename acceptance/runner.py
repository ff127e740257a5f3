"""
Acceptance scenario runner.

Executes every scenario for every case in its table, each case inside its
own CleanupScope and Helm release, collects ScenarioResult objects, writes
JSON to <RESULTS_DIR>/scenario_results.json and prints a Rich summary table.
"""
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from types import ModuleType

import structlog
from rich.console import Console
from rich.table import Table

from acceptance import ScenarioResult
from acceptance.cleanup import CleanupError, CleanupScope
from acceptance.config import SuiteConfig, load_config
from acceptance.kubectl import KubectlOptions
from acceptance.log import configure_logging
from acceptance.scenarios import (
    cleanup_controller,
    connect_inject_namespaces,
    root_service_accounts,
)
from acceptance.scenarios.common import NamespaceCase, ScenarioEnvironment, random_name

logger = structlog.get_logger(__name__)

SCENARIO_MODULES: list[ModuleType] = [
    connect_inject_namespaces,
    cleanup_controller,
    root_service_accounts,
]


def _skipped(module: ModuleType, case: NamespaceCase) -> ScenarioResult:
    return ScenarioResult(
        scenario_name=module.SCENARIO_NAME,
        case=case.name,
        expected_outcome="enterprise install",
        actual_outcome="skipped: ENABLE_ENTERPRISE is not set",
        correct=True,
        skipped=True,
    )


def run_case(module: ModuleType, case: NamespaceCase, config: SuiteConfig) -> ScenarioResult:
    """Run one case in a fresh release and cleanup scope; never raises."""
    release_name = random_name()
    options = KubectlOptions(
        context_name=config.kube_context,
        config_path=config.kubeconfig,
        namespace=config.kube_namespace,
    )
    scope = CleanupScope(keep_on_failure=config.no_cleanup_on_failure)
    result: ScenarioResult | None = None
    try:
        with scope:
            env = ScenarioEnvironment(config=config, options=options, scope=scope, release_name=release_name)
            result = module.run(case, env)
            if not result.correct:
                scope.mark_failed()
    except CleanupError as exc:
        # The body finished; only its teardown failed.
        logger.error(
            "scenario_cleanup_failed",
            scenario=module.SCENARIO_NAME,
            case=case.name,
            release=release_name,
            error=str(exc),
        )
        if result.correct:
            result = replace(
                result,
                actual_outcome=type(exc).__name__,
                correct=False,
                error=str(exc),
            )
    except Exception as exc:
        logger.error(
            "scenario_failed",
            scenario=module.SCENARIO_NAME,
            case=case.name,
            release=release_name,
            error=str(exc),
        )
        result = ScenarioResult(
            scenario_name=module.SCENARIO_NAME,
            case=case.name,
            expected_outcome="scenario converges",
            actual_outcome=type(exc).__name__,
            correct=False,
            details={"release": release_name},
            error=str(exc),
        )
    if scope.errors:
        result.details["cleanup_errors"] = [str(err) for err in scope.errors]
    return result


def run_all(config: SuiteConfig, only: list[str] | None = None) -> list[ScenarioResult]:
    """Run every selected scenario for every case and return all results."""
    all_results: list[ScenarioResult] = []

    for module in SCENARIO_MODULES:
        if only and module.SCENARIO_NAME not in only:
            continue
        for case in module.CASES:
            if module.ENTERPRISE_ONLY and not config.enable_enterprise:
                all_results.append(_skipped(module, case))
                continue
            logger.info("scenario_start", scenario=module.SCENARIO_NAME, case=case.name)
            all_results.append(run_case(module, case, config))

    return all_results


def save_results(results: list[ScenarioResult], results_dir: Path) -> Path:
    """Serialise results to JSON."""
    results_dir.mkdir(parents=True, exist_ok=True)
    output_path = results_dir / "scenario_results.json"
    serialisable = [
        {
            "scenario_name": r.scenario_name,
            "case": r.case,
            "expected_outcome": r.expected_outcome,
            "actual_outcome": r.actual_outcome,
            "correct": r.correct,
            "skipped": r.skipped,
            "details": r.details,
            "error": r.error,
        }
        for r in results
    ]
    with open(output_path, "w") as fh:
        json.dump(
            {"run_at": datetime.now(timezone.utc).isoformat(), "results": serialisable},
            fh,
            indent=2,
        )
    return output_path


def print_table(results: list[ScenarioResult], console: Console | None = None) -> None:
    """Print Rich summary table."""
    console = console or Console()
    table = Table(title="Acceptance Scenario Results", show_lines=True)
    table.add_column("Scenario", style="cyan", no_wrap=True)
    table.add_column("Case", style="magenta")
    table.add_column("Expected", style="white")
    table.add_column("Actual", style="white")
    table.add_column("Pass/Fail", justify="center")

    for r in results:
        if r.skipped:
            status = "[yellow]- SKIP[/yellow]"
        elif r.correct:
            status = "[green]✓ PASS[/green]"
        else:
            status = "[red]✗ FAIL[/red]"
        table.add_row(
            r.scenario_name,
            r.case,
            r.expected_outcome,
            r.error or r.actual_outcome,
            status,
        )

    console.print(table)
    total = len(results)
    skipped = sum(1 for r in results if r.skipped)
    failed = sum(1 for r in results if not r.correct)
    console.print(
        f"\n[bold]Total: {total}  Passed: {total - failed - skipped}  "
        f"Skipped: {skipped}  Failed: {failed}[/bold]"
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run Consul namespace acceptance scenarios.")
    parser.add_argument(
        "--scenario",
        action="append",
        choices=[m.SCENARIO_NAME for m in SCENARIO_MODULES],
        help="Only run this scenario (repeatable).",
    )
    parser.add_argument("--log-level", default="info")
    parser.add_argument("--json-logs", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, json_output=args.json_logs)
    config = load_config()

    results = run_all(config, only=args.scenario)
    path = save_results(results, config.results_dir)
    print_table(results)
    print(f"\nResults written to {path}")
    return 0 if all(r.correct for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
