"""Entry point for `python -m magi_workflow` and the `magi-workflow` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from magi_workflow import AddFeatureWorkflow, SpecDocumentWorkflow, TurnResult
from magi_workflow.models import WorkflowKind
from magi_workflow.settings import RuntimeSettings


def _json_object(raw: str) -> dict:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"not valid JSON: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise argparse.ArgumentTypeError("must be a JSON object")
    return value


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive magi workflows one turn at a time")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (logs go to stderr; the turn result goes to stdout)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    spec = subparsers.add_parser("spec", help="Run one turn of the PRD -> TDD -> Tasks pipeline")
    spec.add_argument("--project-path", type=Path, required=True, help="Root of the project the documents belong to")
    spec.add_argument("--feature-id", required=True, help="NNN-kebab-case id, or a plain feature name to allocate one")
    spec.add_argument("--finalize", action="store_true", help="Confirm the current document and advance")

    add_feature = subparsers.add_parser("add-feature", help="Run one turn of the add-feature workflow")
    add_feature.add_argument("--project-path", type=Path, required=True, help="Root of the iOS or Android project")
    add_feature.add_argument("--feature-slug", default=None, help="Optional kebab-case workflow identifier")
    add_feature.add_argument("--feature-description", default=None, help="What the feature should do")
    add_feature.add_argument(
        "--agent-result",
        type=_json_object,
        default=None,
        help="JSON object answering the pending step's resultSchema",
    )

    status = subparsers.add_parser("status", help="Print the stored workflow context")
    status.add_argument("--project-path", type=Path, required=True)
    status.add_argument("--workflow", choices=[kind.value for kind in WorkflowKind], required=True)
    status.add_argument("--feature-id", required=True, help="Spec feature id or add-feature slug")
    return parser.parse_args(argv)


def _print_result(result: TurnResult) -> int:
    print(result.to_json())
    return 0 if result.success else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    load_dotenv()

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2

    if args.command == "spec":
        workflow = SpecDocumentWorkflow(settings=settings)
        return _print_result(
            workflow.run_turn(
                {
                    "projectPath": str(args.project_path),
                    "featureId": args.feature_id,
                    "userInput": "finalize" if args.finalize else None,
                }
            )
        )

    if args.command == "add-feature":
        return _print_result(
            AddFeatureWorkflow(settings=settings).run_turn(
                {
                    "projectPath": str(args.project_path),
                    "featureSlug": args.feature_slug,
                    "featureDescription": args.feature_description,
                    "agentResult": args.agent_result,
                }
            )
        )

    try:
        if args.workflow == WorkflowKind.SPEC_DOCUMENTS.value:
            context = SpecDocumentWorkflow(settings=settings).status(args.project_path, args.feature_id)
        else:
            context = AddFeatureWorkflow(settings=settings).status(args.project_path, args.feature_id)
    except (OSError, ValueError) as exc:
        logging.error("Unable to read workflow state: %s", exc)
        return 1
    if context is None:
        logging.error("No %s workflow state for %s", args.workflow, args.feature_id)
        return 1
    print(json.dumps(context.to_wire(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
