"""Entry point for `python -m devpipe` and the `devpipe` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
from pathlib import Path

from devpipe import (
    CapabilityRegistry,
    EventBroadcaster,
    EventKind,
    FileStateStore,
    GateType,
    GitCapability,
    GitHubCapability,
    LangChainReasoningAdapter,
    PipelineCoordinator,
    PipelineError,
    Stage,
    StageStatus,
    Subscription,
    WorkspaceFilesystem,
)
from devpipe.settings import RuntimeSettings

DEFAULT_ANSWER = "No additional constraints; use sensible defaults."


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a task through the devpipe pipeline")
    parser.add_argument("--requirements-file", type=Path, default=None, help="Path to a requirements document")
    parser.add_argument(
        "--requirements-text",
        default=None,
        help="Inline requirements text (mutually exclusive with requirements file)",
    )
    parser.add_argument("--title", default=None, help="Task title (default: first line of the requirements)")
    parser.add_argument("--owner", default=None, help="Principal that owns the task")
    parser.add_argument(
        "--workspace-root",
        type=Path,
        default=None,
        help="Root directory the filesystem and git capabilities act on (default: cwd)",
    )
    parser.add_argument("--state-store-root", type=Path, default=None, help="Where the ledger is persisted")
    parser.add_argument("--max-iterations", type=int, default=None, help="Agentic loop iteration bound")
    parser.add_argument(
        "--approval-action",
        default="APPROVE",
        choices=["APPROVE", "REJECT"],
        help="Decision applied to approval gates during non-interactive execution",
    )
    parser.add_argument("--approval-feedback", default=None, help="Optional approver notes")
    parser.add_argument("--github-repository", default=None, help="owner/name of the repository for pull requests")
    parser.add_argument("--pr-head", default=None, help="Branch to open the pull request from")
    parser.add_argument("--pr-base", default="main", help="Branch to open the pull request against")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_requirements(*, requirements_file: Path | None, requirements_text: str | None) -> str:
    if requirements_text is not None and requirements_file is not None:
        raise ValueError("requirements_text cannot be combined with requirements_file input")
    if requirements_text is not None:
        trimmed = requirements_text.strip()
        if not trimmed:
            raise ValueError("requirements_text must be non-empty")
        return trimmed
    if requirements_file is None:
        raise ValueError("one of --requirements-file or --requirements-text is required")
    if not requirements_file.is_file():
        raise FileNotFoundError(f"Requirements file does not exist: {requirements_file}")
    content = requirements_file.read_text(encoding="utf-8").strip()
    if not content:
        raise ValueError(f"Requirements file is empty: {requirements_file}")
    return content


def build_settings(args: argparse.Namespace) -> RuntimeSettings:
    settings = RuntimeSettings.from_env()
    overrides: dict[str, object] = {}
    if args.workspace_root is not None:
        overrides["workspace_root"] = str(args.workspace_root.resolve())
    if args.state_store_root is not None:
        overrides["state_store_root"] = str(args.state_store_root)
    if args.max_iterations is not None:
        overrides["max_iterations"] = args.max_iterations
    return dataclasses.replace(settings, **overrides).normalized() if overrides else settings


def build_tools(settings: RuntimeSettings, github_repository: str | None) -> CapabilityRegistry:
    workspace = settings.workspace_root_path.resolve()
    workspace.mkdir(parents=True, exist_ok=True)
    registry = CapabilityRegistry([WorkspaceFilesystem(workspace)])
    if (workspace / ".git").exists():
        registry.connect(GitCapability(workspace))
    else:
        logging.info("No git repository at %s; git capability not connected", workspace)
    if github_repository:
        registry.connect(GitHubCapability(github_repository))
    return registry


async def resolve_architecture_gates(
    coordinator: PipelineCoordinator,
    subscription: Subscription,
    *,
    approve: bool,
    notes: str | None,
) -> None:
    """Answer every architecture gate announced on ``subscription`` with a fixed decision."""
    async for event in subscription:
        if event.kind == EventKind.STAGE_UPDATE and event.status == StageStatus.WAITING_APPROVAL:
            if event.data.get("gate_type") == GateType.ARCHITECTURE_DECISION.value:
                logging.info("Auto-%s gate %s", "approving" if approve else "rejecting", event.data["gate_id"])
                coordinator.resolve_gate(event.data["gate_id"], approve, notes)
        elif event.kind == EventKind.LOG:
            logging.info("[%s] %s", event.stage.value if event.stage else "-", event.message)


async def run_pipeline(args: argparse.Namespace, requirements: str, settings: RuntimeSettings) -> int:
    approve = args.approval_action == "APPROVE"
    store = FileStateStore(settings.state_store_path(Path.cwd()))
    broadcaster = EventBroadcaster(queue_size=settings.subscriber_queue_size)
    coordinator = PipelineCoordinator(
        store=store,
        broadcaster=broadcaster,
        reasoning=LangChainReasoningAdapter(
            model_name=settings.model_reasoning,
            timeout_seconds=settings.adapter_timeout_seconds,
        ),
        review_reasoning=LangChainReasoningAdapter(
            model_name=settings.model_review,
            timeout_seconds=settings.adapter_timeout_seconds,
        ),
        tools=build_tools(settings, args.github_repository),
        settings=settings,
    )
    title = args.title or requirements.splitlines()[0][:80]
    task = coordinator.create_task(title, requirements, owner=args.owner)
    print(f"task_id={task.id}")

    subscription = broadcaster.subscribe(task.id)
    watcher = asyncio.create_task(
        resolve_architecture_gates(coordinator, subscription, approve=approve, notes=args.approval_feedback)
    )
    try:
        questions = await coordinator.run_triage(task.id)
        if questions:
            if not approve:
                pending = coordinator.gates.pending(task.id)
                if pending is not None:
                    coordinator.resolve_gate(pending.id, False, args.approval_feedback)
                print("triage=REJECTED")
                return 1
            for question in questions:
                if question.required:
                    coordinator.answer_question(task.id, question.id, args.approval_feedback or DEFAULT_ANSWER)

        plan = await coordinator.run_task_creation(task.id)
        print(f"task_plan_steps={len(plan.steps)}")

        result = await coordinator.run_agentic_loop(task.id)
        print(f"loop_iterations={result.iterations}")

        summary = await coordinator.run_code_review(task.id)
        print(f"review_quality={summary.overall_quality.value}")
        if coordinator.ledger.entry(task.id, Stage.CODE_REVIEW).status != StageStatus.COMPLETED:
            print("code_review=WAITING_APPROVAL")
            print(json.dumps(summary.model_dump(mode="json"), indent=2))
            return 1

        if args.pr_head and args.github_repository:
            outcome = await coordinator.run_pr_creation(task.id, head=args.pr_head, base=args.pr_base)
            print(f"pr_url={outcome['pr_url']}")
    finally:
        subscription.close()
        await asyncio.gather(watcher, return_exceptions=True)
        progress = coordinator.progress(task.id)
        print(f"progress={progress.percentage}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        requirements = load_requirements(
            requirements_file=args.requirements_file,
            requirements_text=args.requirements_text,
        )
        settings = build_settings(args)
    except (OSError, ValueError) as exc:
        logging.error("Unable to load input: %s", exc)
        return 1

    try:
        return asyncio.run(run_pipeline(args, requirements, settings))
    except PipelineError as exc:
        logging.error("Pipeline stopped: %s", exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("Pipeline execution failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
