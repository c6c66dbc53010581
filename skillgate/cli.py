from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from pathlib import Path

from skillgate.bootstrap import build_execution_registry
from skillgate.core.config import get_settings
from skillgate.core.errors import SkillgateError
from skillgate.core.logging import configure_logging
from skillgate.persistence.pg import init_db, session_scope
from skillgate.risk.approvals import ApprovalQueue, approval_to_dict
from skillgate.skills.dispatcher import SkillDispatcher
from skillgate.skills.models import ExecutionOptions
from skillgate.trust.keystore import KeystoreError, create_identity

PASSPHRASE_ENV = "SG_PASSPHRASE"


def _print(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _passphrase(prompt: str, confirm: bool = False) -> str:
    from_env = os.environ.get(PASSPHRASE_ENV)
    if from_env:
        return from_env
    passphrase = getpass.getpass(prompt)
    if confirm and getpass.getpass("Repeat passphrase: ") != passphrase:
        raise KeystoreError("passphrases do not match")
    return passphrase


def _parse_params(pairs: list[str]) -> dict[str, object]:
    params: dict[str, object] = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"parameter must be name=value: {pair!r}")
        try:
            params[name] = json.loads(raw)
        except ValueError:
            params[name] = raw
    return params


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Skillgate CLI")
    top = parser.add_subparsers(dest="command", required=True)

    keygen = top.add_parser("keygen", help="Create the encrypted signing identity")
    keygen.add_argument("--path", default=None, help="Key file (default: settings.identity_path)")
    keygen.add_argument("--kdf", choices=["moderate", "interactive", "min"], default=None)
    keygen.add_argument("--force", action="store_true", help="Overwrite an existing key file")

    skills = top.add_parser("skills", help="Skill operations")
    skills_sub = skills.add_subparsers(dest="skills_command", required=True)
    skills_sub.add_parser("list", help="List loaded skills")
    run = skills_sub.add_parser("run", help="Dispatch one skill command")
    run.add_argument("skill_id")
    run.add_argument("command_name")
    run.add_argument("-p", "--param", action="append", default=[], help="name=value (value may be JSON)")
    run.add_argument("--agent-id", default=None)
    run.add_argument("--mission-id", default=None)
    run.add_argument("--model", default=None, help="Override the skill's model")
    run.add_argument("--unlock", action="store_true", help="Unlock the signing identity for this run")

    approvals = top.add_parser("approvals", help="Approval queue")
    approvals_sub = approvals.add_subparsers(dest="approvals_command", required=True)
    listing = approvals_sub.add_parser("list", help="List approvals")
    listing.add_argument("--status", choices=["pending", "approved", "dismissed"], default="pending")
    approve = approvals_sub.add_parser("approve", help="Approve and resubmit a queued action")
    approve.add_argument("approval_id")
    approve.add_argument("--unlock", action="store_true", help="Unlock the signing identity for the resubmission")
    dismiss = approvals_sub.add_parser("dismiss", help="Dismiss a queued action")
    dismiss.add_argument("approval_id")

    serve = top.add_parser("serve", help="Run the hub and local API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "skillgate.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_config=None,
    )
    return 0


def _keygen(args: argparse.Namespace) -> int:
    settings = get_settings()
    path = Path(args.path) if args.path else settings.identity_path
    stored = create_identity(
        path,
        _passphrase("New passphrase: ", confirm=True),
        kdf=args.kdf or settings.keystore_kdf,
        overwrite=args.force,
    )
    _print({"path": str(path), "instance_id": stored.instance_id, "public_key": stored.public_key})
    return 0


def _runtime(unlock: bool):
    runtime = build_execution_registry(get_settings())
    if unlock and runtime.signing is not None:
        runtime.signing.acquire(_passphrase("Passphrase: "))
    return runtime


def _skills(args: argparse.Namespace) -> int:
    if args.skills_command == "list":
        runtime = build_execution_registry(get_settings())
        _print([skill.summary() for skill in runtime.skills.all()])
        return 0

    runtime = _runtime(args.unlock)
    options = ExecutionOptions(agent_id=args.agent_id, mission_id=args.mission_id, model_override=args.model)
    try:
        with session_scope() as session:
            result = SkillDispatcher(session, runtime).execute_skill(
                args.skill_id, args.command_name, _parse_params(args.param), options
            )
    finally:
        if runtime.signing is not None:
            runtime.signing.release()
    _print(result.to_dict())
    return 0 if result.success else 1


def _approvals(args: argparse.Namespace) -> int:
    actor_id = get_settings().human_actor_id
    if args.approvals_command == "list":
        with session_scope() as session:
            _print([approval_to_dict(row) for row in ApprovalQueue(session).list_approvals(args.status)])
        return 0

    if args.approvals_command == "dismiss":
        with session_scope() as session:
            _print(approval_to_dict(ApprovalQueue(session).dismiss(args.approval_id, actor_id)))
        return 0

    runtime = _runtime(args.unlock)
    try:
        with session_scope() as session:
            dispatcher = SkillDispatcher(session, runtime)
            row, result = ApprovalQueue(session, runtime.notifier).approve(
                args.approval_id, actor_id, dispatcher.execute_skill
            )
            _print({"approval": approval_to_dict(row), "resubmission": result.to_dict() if result else None})
    finally:
        if runtime.signing is not None:
            runtime.signing.release()
    return 0 if result is None or result.success else 1


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    init_db()

    try:
        if args.command == "keygen":
            return _keygen(args)
        if args.command == "skills":
            return _skills(args)
        if args.command == "approvals":
            return _approvals(args)
        if args.command == "serve":
            return _serve(args)
    except (SkillgateError, KeystoreError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
