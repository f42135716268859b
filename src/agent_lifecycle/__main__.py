"""Entry point for `python -m agent_lifecycle` and the `agent-lifecycle` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import time

from agent_lifecycle.critique import CritiqueService
from agent_lifecycle.documents import StrategicInputs
from agent_lifecycle.llm import LangChainReasoningProvider
from agent_lifecycle.pipelines import PipelineAlreadyRunning, PipelineRunResult, ProgressTracker, build_pipelines
from agent_lifecycle.recipes import RECIPES
from agent_lifecycle.revision_graph import RevisionGraph
from agent_lifecycle.settings import RuntimeSettings
from agent_lifecycle.state_store import build_state_store


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run resumable agent pipelines")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    critique = subparsers.add_parser("content-critique", help="Write, critique and revise one piece of content")
    critique.add_argument("--entity-id", required=True)
    critique.add_argument("--content-type", required=True, choices=sorted(RECIPES))
    critique.add_argument("--context", default="", help="Content-specific context (research, keywords)")

    revise = subparsers.add_parser("revise", help="Run the fixed revision loop without an orchestrating agent")
    revise.add_argument("--entity-id", required=True)
    revise.add_argument("--content-type", required=True, choices=sorted(RECIPES))
    revise.add_argument("--context", default="")

    foundation = subparsers.add_parser("foundation", help="Generate foundation documents for an entity")
    foundation.add_argument("--entity-id", required=True)
    foundation.add_argument("--product-context", default=None, help="Product description the documents are built from")
    foundation.add_argument("--differentiation", default=None)
    foundation.add_argument("--deliberate-tradeoffs", default=None)
    foundation.add_argument("--anti-target", default=None)

    progress = subparsers.add_parser("progress", help="Print a pipeline progress record as JSON")
    progress.add_argument("--run-id", default=None)
    progress.add_argument("--agent-id", default=None, help="With --entity-id, show the latest run instead")
    progress.add_argument("--entity-id", default=None)
    return parser.parse_args(argv)


def _print_result(result: PipelineRunResult) -> None:
    print(f"run_id={result.run_id}")
    print(f"status={result.status}")
    if result.final_output:
        print(result.final_output)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid runtime settings: %s", exc)
        return 1
    store = build_state_store(settings)

    if args.command == "progress":
        tracker = ProgressTracker(
            store,
            ttl_seconds=settings.state_ttl_seconds,
            stale_after_seconds=settings.progress_stale_seconds,
        )
        if args.run_id:
            record = tracker.poll(args.run_id)
        elif args.agent_id and args.entity_id:
            record = tracker.latest_for(args.agent_id, args.entity_id)
        else:
            logging.error("progress needs --run-id, or --agent-id with --entity-id")
            return 1
        print(json.dumps(record.model_dump(mode="json") if record is not None else None, indent=2))
        return 0

    provider = LangChainReasoningProvider()
    critique_service = CritiqueService.from_settings(settings, store=store)

    try:
        if args.command == "revise":
            graph = RevisionGraph(
                store=store,
                provider=provider,
                critique_service=critique_service,
                model_name=settings.model,
                ttl_seconds=settings.state_ttl_seconds,
            )
            outcome = graph.run(
                run_id=f"revise-{args.entity_id}-{int(time.time() * 1000)}",
                entity_id=args.entity_id,
                content_type=args.content_type,
                content_context=args.context,
            )
            print(f"quality={outcome.quality}")
            print(f"rounds={outcome.rounds}")
            print(outcome.draft)
            return 0

        content, foundation = build_pipelines(
            settings,
            store=store,
            provider=provider,
            critique_service=critique_service,
        )
        if args.command == "content-critique":
            result = content.run(args.entity_id, args.content_type, args.context)
        else:
            strategic_inputs = StrategicInputs(
                differentiation=args.differentiation,
                deliberate_tradeoffs=args.deliberate_tradeoffs,
                anti_target=args.anti_target,
            )
            result = foundation.run(args.entity_id, strategic_inputs, product_context=args.product_context)
    except PipelineAlreadyRunning as exc:
        logging.error("%s", exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("Pipeline execution failed: %s", exc)
        return 1

    _print_result(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
