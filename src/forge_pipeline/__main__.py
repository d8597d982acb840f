"""Entry point for `python -m forge_pipeline` and the `forge` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from forge_pipeline.artifacts import ArtifactService
from forge_pipeline.auditor import AuditLedger, CompletionAuditor
from forge_pipeline.classification import ErrorClassifier
from forge_pipeline.conductor import Conductor
from forge_pipeline.errors import ForgeError
from forge_pipeline.loops import RepairLoop
from forge_pipeline.models import ArtifactType, HumanResolution, HumanResolutionAction, PipelineStatus
from forge_pipeline.preconditions import PreconditionValidator
from forge_pipeline.provenance import compute_hash
from forge_pipeline.settings import RuntimeSettings
from forge_pipeline.state_store import PipelineStateStore
from forge_pipeline.verification import VerificationPipeline
from forge_pipeline.workspace import WorkspaceAccessor

STATUS_CHOICES = [status.value for status in PipelineStatus]
ARTIFACT_TYPE_CHOICES = [artifact_type.value for artifact_type in ArtifactType]


def _check_command_arg(value: str) -> tuple[str, str]:
    name, sep, command = value.partition("=")
    if not sep or not name.strip() or not command.strip():
        raise argparse.ArgumentTypeError(f"expected NAME=COMMAND, got: {value!r}")
    return name.strip(), command.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drive the forge build pipeline control plane")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--state-root",
        type=Path,
        default=None,
        help="State store directory (default: FORGE_STATE_STORE_ROOT under cwd)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create a pipeline at status idea")
    init.add_argument("pipeline_id")

    status = sub.add_parser("status", help="Print the conductor snapshot")
    status.add_argument("pipeline_id")

    next_action = sub.add_parser("next", help="Print the next stage to run, or why nothing should")
    next_action.add_argument("pipeline_id")

    transition = sub.add_parser("transition", help="Advance the pipeline along the transition graph")
    transition.add_argument("pipeline_id")
    transition.add_argument("target", choices=STATUS_CHOICES)
    transition.add_argument("--stage", default=None)

    approve = sub.add_parser("approve", help="Human approval: open the gate and advance")
    approve.add_argument("pipeline_id")
    approve.add_argument("target", choices=STATUS_CHOICES)
    approve.add_argument("--stage", default="human")

    reject = sub.add_parser("reject", help="Human rejection: keep the gate closed")
    reject.add_argument("pipeline_id")
    reject.add_argument("--reason", required=True)

    abort = sub.add_parser("abort", help="Move the pipeline to failed")
    abort.add_argument("pipeline_id")
    abort.add_argument("--reason", required=True)

    resolve = sub.add_parser("resolve", help="Resolve an escalated repair loop")
    resolve.add_argument("pipeline_id")
    resolve.add_argument("action", choices=[action.value for action in HumanResolutionAction])
    resolve.add_argument("--rationale", default="")

    hash_cmd = sub.add_parser("hash", help="Compute the provenance hash of an artifact payload file")
    hash_cmd.add_argument("artifact_type", choices=ARTIFACT_TYPE_CHOICES)
    hash_cmd.add_argument("payload_file", type=Path)
    hash_cmd.add_argument("--upstream", action="append", default=[], help="Upstream hash, in lineage order")

    chain = sub.add_parser("verify-chain", help="Re-verify every approved artifact of a pipeline")
    chain.add_argument("pipeline_id")

    for name, help_text in (
        ("verify", "Run verification checks once and record the result"),
        ("repair-loop", "Run the verify/audit/repair loop until it settles"),
    ):
        run = sub.add_parser(name, help=help_text)
        run.add_argument("pipeline_id")
        run.add_argument("--workspace", default=None, help="Workspace directory (default: derived from pipeline id)")
        run.add_argument(
            "--check-command",
            type=_check_command_arg,
            action="append",
            default=[],
            metavar="NAME=COMMAND",
            help="Extra shell command check, run inside the workspace",
        )
        if name == "verify":
            run.add_argument("--attempt", type=int, default=1)

    audit = sub.add_parser("audit", help="Audit the latest verification result")
    audit.add_argument("pipeline_id")

    preconditions = sub.add_parser("preconditions", help="Check that downstream execution may run")
    preconditions.add_argument("pipeline_id")

    events = sub.add_parser("events", help="Print the pipeline event log")
    events.add_argument("pipeline_id")
    return parser


def _print_model(model: Any) -> None:
    print(model.model_dump_json(indent=2))


def _resolve(conductor: Conductor, pipeline_id: str, resolution: HumanResolution) -> Any:
    if resolution.action == HumanResolutionAction.RETRY:
        return conductor.approve(pipeline_id, PipelineStatus.BUILDING, stage="human")
    return conductor.approve(pipeline_id, PipelineStatus.VERIFICATION_FAILED, stage="human")


def dispatch(args: argparse.Namespace, settings: RuntimeSettings, store: PipelineStateStore) -> int:
    conductor = Conductor(store)
    command = args.command

    if command == "init":
        _print_model(conductor.initialize(args.pipeline_id))
    elif command == "status":
        _print_model(conductor.get_state_snapshot(args.pipeline_id))
    elif command == "next":
        _print_model(conductor.next_action(args.pipeline_id))
    elif command == "transition":
        _print_model(conductor.transition(args.pipeline_id, PipelineStatus(args.target), stage=args.stage))
    elif command == "approve":
        _print_model(conductor.approve(args.pipeline_id, PipelineStatus(args.target), stage=args.stage))
    elif command == "reject":
        _print_model(conductor.reject(args.pipeline_id, args.reason))
    elif command == "abort":
        _print_model(conductor.abort(args.pipeline_id, args.reason))
    elif command == "resolve":
        resolution = HumanResolution(action=HumanResolutionAction(args.action), rationale=args.rationale)
        _print_model(_resolve(conductor, args.pipeline_id, resolution))
    elif command == "hash":
        payload = json.loads(args.payload_file.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"payload file must contain a JSON object: {args.payload_file}")
        print(compute_hash(ArtifactType(args.artifact_type), payload, args.upstream))
    elif command == "verify-chain":
        approved = ArtifactService(store, conductor).ensure_chain_intact(args.pipeline_id)
        print(json.dumps([a.artifact_id for a in approved], indent=2))
    elif command == "verify":
        verification = VerificationPipeline.from_settings(store, settings, commands=args.check_command)
        with conductor.hold(args.pipeline_id, "verification_executor"):
            result = verification.run_checks(
                args.pipeline_id, args.workspace or args.pipeline_id, attempt=args.attempt
            )
        _print_model(result)
        return 0 if not result.failed_steps else 1
    elif command == "audit":
        auditor = CompletionAuditor(
            AuditLedger(store), ErrorClassifier.from_settings(settings), budget=settings.repair_budget
        )
        _print_model(auditor.audit(args.pipeline_id))
    elif command == "repair-loop":
        loop = RepairLoop(
            store=store,
            verification=VerificationPipeline.from_settings(store, settings, commands=args.check_command),
            settings=settings,
            enable_interrupts=False,
        )
        try:
            outcome = loop.run(args.pipeline_id, args.workspace)
        finally:
            loop.close()
        print(json.dumps(asdict(outcome), indent=2, default=str))
        return 0 if outcome.outcome.value in ("completed", "proceed") else 1
    elif command == "preconditions":
        validator = PreconditionValidator(store, WorkspaceAccessor.from_settings(settings))
        validator.validate(args.pipeline_id)
        print(json.dumps({"manifest_hash": validator.manifest_hash(args.pipeline_id)}, indent=2))
    elif command == "events":
        for event in store.read_events(args.pipeline_id):
            print(event.model_dump_json())
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    env_path = Path.cwd() / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid runtime settings: %s", exc)
        return 1
    store = PipelineStateStore(args.state_root or settings.state_store_path(Path.cwd()))

    try:
        return dispatch(args, settings, store)
    except ForgeError as exc:
        logging.error("%s", exc)
        return 1
    except (OSError, ValueError) as exc:
        logging.error("Command %s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
