#!/usr/bin/env python3
"""
Proof Gate - Command Line Interface

Usage:
    proof-gate run [--json] [--download DIR] [--copy] Run the Proof Gate and emit an Evidence Pack
    proof-gate validate <pack.json>                    Re-validate a saved Evidence Pack
    proof-gate verify-token <pack.json>                Recompute and check a pack's proof token
    proof-gate schema-validate <pack.json>             Check a pack against the JSON Schema only
    proof-gate build-output set|show|clear             Manage the saved raw build output
    proof-gate claim-log set|show|clear                Manage the saved claim log
    proof-gate issues show|reset                       Show or reset recurring issue counters
    proof-gate edge-invoke <function> [--body JSON]    Invoke a function and record the run
    proof-gate qa [--tenant-a ID --tenant-b ID]        Run the tenant-isolation QA harness
    proof-gate support-bundle                          Emit the legacy support bundle
    proof-gate tenant add <name> [--api-key KEY]       Create a tenant (and an API-key integration)
    proof-gate role grant <user_id> <role>             Grant a role to a user
    proof-gate serve [--host H] [--port P]             Run the HTTP functions server

Exit codes: 0 success, 1 validation failed or run aborted, 2 usage or configuration error.
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Optional

from proof_gate.auth import RoleContext, SessionAuth, resolve_role_context
from proof_gate.backend import FunctionsClient, HttpBackendClient
from proof_gate.composer import compute_pack_hash, verify_pack_token
from proof_gate.config import GateConfig
from proof_gate.crypto import Ed25519KeyPair, _iso_utc
from proof_gate.errors import ProofGateAborted, ProofGateError
from proof_gate.evidence_pack import EdgeConsoleRun, EvidencePack, save_edge_run
from proof_gate.export import copy_json, download_json, to_pretty_json
from proof_gate.fs_reality import (
    clear_build_output,
    clear_claim_log,
    get_build_output_meta,
    load_build_output,
    load_claim_log,
    save_build_output,
    save_claim_log,
)
from proof_gate.issue_counts import RecurringIssueCounts
from proof_gate.orchestrator import DEFAULT_ROUTE, ProofGate
from proof_gate.qa import QAHarness
from proof_gate.signing import verify_proof_signature
from proof_gate.state import JsonFileStateStore
from proof_gate.store import PlatformStore
from proof_gate.support_bundle import SupportBundleRunner
from proof_gate.validator import get_validation_summary, schema_errors, validate_evidence_pack

logger = logging.getLogger("proof_gate.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


class CliError(Exception):
    """Usage or configuration problem; reported without a traceback."""


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def load_gate_config(args) -> GateConfig:
    config = GateConfig.from_env()
    overrides = {}
    if args.db:
        overrides["db_path"] = args.db
    if args.state_dir:
        overrides["state_dir"] = args.state_dir
    return dataclasses.replace(config, **overrides) if overrides else config


def load_pack_file(path: str) -> EvidencePack:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise CliError(f"File not found: {path}")
    except json.JSONDecodeError as e:
        raise CliError(f"Invalid JSON in {path}: {e}")
    if not isinstance(data, dict):
        raise CliError(f"{path} does not contain a JSON object")
    return EvidencePack.from_dict(data)


def resolve_caller(args, store: PlatformStore) -> RoleContext:
    user_id: Optional[str] = args.user_id
    if args.token:
        user_id, err = SessionAuth.load_from_env().resolve_identity(f"Bearer {args.token}")
        if err:
            raise CliError(f"Session token rejected: {err}")
    if args.role:
        return RoleContext.from_roles(user_id or "cli-operator", args.role)
    return resolve_role_context(store, user_id)


def local_functions(config: GateConfig, store: PlatformStore) -> FunctionsClient:
    from proof_gate.server import PlatformGateway

    return PlatformGateway(config, store=store).functions_client()


def functions_for(config: GateConfig, store: PlatformStore) -> FunctionsClient:
    if config.backend_configured:
        return HttpBackendClient.from_config(config)
    return local_functions(config, store)


def build_gate(config: GateConfig, store: PlatformStore) -> ProofGate:
    try:
        gate = ProofGate.from_config(config, store=store)
    except (RuntimeError, ValueError) as e:
        raise CliError(str(e))
    if gate.functions is None:
        gate.functions = local_functions(config, store)
        gate.qa_harness = QAHarness(store, gate.functions)
    return gate


def emit_json(obj: Any, args) -> None:
    if getattr(args, "download", None):
        path = download_json(obj, args.download, prefix=getattr(args, "out_prefix", "evidence-pack"))
        print(f"Wrote {path}")
    if getattr(args, "copy", False):
        result = copy_json(obj)
        if result.copied:
            print("Copied to clipboard")
        else:
            print("Clipboard unavailable; JSON follows for manual copy:")
            print(result.fallback_text)
    if getattr(args, "json", False):
        print(to_pretty_json(obj))


def print_validation(result) -> None:
    for e in result.errors:
        print(f"  ✗ {e}")
    for w in result.warnings:
        print(f"  ! {w}")
    if result.required_actions:
        print("\nRequired actions:")
        for a in result.required_actions:
            value = f" [{a.value}]" if a.value else ""
            print(f"  - {a.action} @ {a.location}{value}")


def cmd_run(args) -> int:
    """Run every check and emit the Evidence Pack."""
    config = load_gate_config(args)
    store = PlatformStore(config.db_path)
    gate = build_gate(config, store)
    role = resolve_caller(args, store)

    try:
        run = asyncio.run(gate.run(role, current_route=args.route))
    except ProofGateAborted as e:
        print(f"\nPROOF GATE ABORTED at {e.step_id}: {e.reason}", file=sys.stderr)
        if e.pack is not None:
            emit_json(e.pack, args)
        return EXIT_FAILED

    pack = run.pack
    print(f"\n{'=' * 60}")
    print(f"PROOF GATE: {get_validation_summary(pack, run.validation)}")
    print(f"{'=' * 60}")
    print(f"Proof token: {run.composed.proof_token}")
    print(f"Pack hash:   {run.composed.pack_hash[:16]}...")
    print(f"Signed:      {'yes (' + run.composed.signature.key_id + ')' if run.composed.is_signed else 'no'}")
    for rec in run.records:
        mark = "✓" if rec.ok else "✗"
        print(f"  {mark} {rec.step_id} ({rec.duration_ms} ms){'' if rec.ok else ': ' + str(rec.error)}")
    print()
    print_validation(run.validation)
    print(f"{'=' * 60}\n")

    emit_json(pack, args)
    return EXIT_OK if run.ok else EXIT_FAILED


def cmd_validate(args) -> int:
    pack = load_pack_file(args.pack)
    result = validate_evidence_pack(pack)
    print(f"{args.pack}: {get_validation_summary(pack, result)}")
    print_validation(result)
    if not verify_pack_token(pack):
        print("  ✗ proof token does not match pack content")
        return EXIT_FAILED
    return EXIT_OK if result.ok else EXIT_FAILED


def cmd_verify_token(args) -> int:
    pack = load_pack_file(args.pack)
    ok = verify_pack_token(pack)
    print(f"{'✓' if ok else '✗'} proof token {pack.proof_token or '(missing)'}")

    kernel = pack.proof_kernel
    if kernel is not None and kernel.pack_hash and kernel.pack_hash != compute_pack_hash(pack):
        print("✗ pack hash does not match pack content")
        ok = False

    if args.public_key:
        if kernel is None or kernel.signature is None:
            print("✗ pack carries no signature")
            return EXIT_FAILED
        try:
            key = Ed25519KeyPair.from_public_key(kernel.signature.key_id, args.public_key)
        except ValueError as e:
            raise CliError(f"--public-key must be hex: {e}")
        sig_ok = verify_proof_signature(key, kernel.proof_token, kernel.pack_hash, kernel.signature)
        print(f"{'✓' if sig_ok else '✗'} signature by {kernel.signature.key_id}")
        ok = ok and sig_ok
    return EXIT_OK if ok else EXIT_FAILED


def cmd_schema_validate(args) -> int:
    try:
        with open(args.pack, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CliError(f"Cannot read {args.pack}: {e}")
    msgs = schema_errors(data) if isinstance(data, dict) else ["$: not a JSON object"]
    for m in msgs:
        print(f"✗ {m}")
    if msgs:
        return EXIT_FAILED
    print(f"✓ {args.pack} conforms to the Evidence Pack schema")
    return EXIT_OK


def _read_text_arg(args) -> str:
    if args.file:
        return Path(args.file).read_text(encoding="utf-8")
    return sys.stdin.read()


def cmd_build_output(args) -> int:
    state = JsonFileStateStore(load_gate_config(args).state_dir)
    if args.action == "set":
        text = _read_text_arg(args)
        save_build_output(state, text)
        print(f"Saved build output ({len(text)} chars)")
    elif args.action == "show":
        meta = get_build_output_meta(state)
        if meta:
            print(json.dumps(meta, indent=2))
        print(load_build_output(state))
    else:
        clear_build_output(state)
        print("Cleared build output")
    return EXIT_OK


def cmd_claim_log(args) -> int:
    state = JsonFileStateStore(load_gate_config(args).state_dir)
    if args.action == "set":
        text = _read_text_arg(args)
        save_claim_log(state, text)
        print(f"Saved claim log ({len(text)} chars)")
    elif args.action == "show":
        print(load_claim_log(state))
    else:
        clear_claim_log(state)
        print("Cleared claim log")
    return EXIT_OK


def cmd_issues(args) -> int:
    counts = RecurringIssueCounts(JsonFileStateStore(load_gate_config(args).state_dir))
    counts.load()
    if args.action == "reset":
        counts.reset()
        print("Recurring issue counters reset")
        return EXIT_OK
    snap = counts.snapshot()
    if not snap:
        print("No recurring issues recorded")
    recurring = set(counts.recurring())
    for code, n in sorted(snap.items()):
        print(f"  {code}: {n}{'  (recurring)' if code in recurring else ''}")
    return EXIT_OK


def cmd_edge_invoke(args) -> int:
    config = load_gate_config(args)
    store = PlatformStore(config.db_path)
    state = JsonFileStateStore(config.state_dir)
    try:
        body = json.loads(args.body) if args.body else {}
    except json.JSONDecodeError as e:
        raise CliError(f"--body is not valid JSON: {e}")
    headers = {}
    if args.tenant_id:
        headers["X-Tenant-Id"] = args.tenant_id
    if args.authorization:
        headers["Authorization"] = args.authorization

    client = functions_for(config, store)
    start = time.monotonic()
    resp = asyncio.run(client.invoke(args.function, body, headers=headers))
    duration_ms = int((time.monotonic() - start) * 1000)
    save_edge_run(state, EdgeConsoleRun(
        timestamp=_iso_utc(),
        function_name=args.function,
        request={"method": "POST", "headers": {k: "..." for k in headers}, "body": body},
        response={"status": resp.status, "body": resp.data},
        duration_ms=duration_ms,
    ))
    print(f"HTTP {resp.status} in {duration_ms} ms")
    print(json.dumps(resp.data, indent=2, ensure_ascii=False))
    return EXIT_OK if resp.ok else EXIT_FAILED


def cmd_qa(args) -> int:
    config = load_gate_config(args)
    store = PlatformStore(config.db_path)
    role = resolve_caller(args, store)
    if not role.is_admin:
        print("QA isolation tests require an admin caller (--user-id or --token)", file=sys.stderr)
        return EXIT_USAGE
    harness = QAHarness(
        store,
        functions_for(config, store),
        client_authorization=f"Bearer {args.client_token}" if args.client_token else None,
    )
    report = asyncio.run(harness.run(args.tenant_a, args.tenant_b))
    for t in report.tests:
        print(f"  [{t.status.upper():5}] {t.name}{': ' + t.error if t.error else ''}")
    print(f"\nSummary: {report.summary}")
    emit_json(report.to_dict(), args)
    return EXIT_OK if report.ok else EXIT_FAILED


def cmd_support_bundle(args) -> int:
    config = load_gate_config(args)
    store = PlatformStore(config.db_path)
    runner = SupportBundleRunner(
        config,
        JsonFileStateStore(config.state_dir),
        store=store,
        rpc=HttpBackendClient.from_config(config) if config.backend_configured else None,
        functions=functions_for(config, store),
    )
    if runner.rpc is None:
        from proof_gate.backend import LocalRpcClient
        runner.rpc = LocalRpcClient.for_store(store)
    bundle, _records = asyncio.run(runner.run(resolve_caller(args, store), current_route=args.route))
    args.out_prefix = "support-bundle"
    if not (args.download or args.copy):
        args.json = True
    emit_json(bundle, args)
    return EXIT_OK


def cmd_tenant(args) -> int:
    store = PlatformStore(load_gate_config(args).db_path)
    tenant_id = store.create_tenant(args.name)
    print(f"Created tenant {tenant_id}")
    if args.api_key:
        store.add_integration(tenant_id, args.api_key)
        print("Added API-key integration")
    return EXIT_OK


def cmd_role(args) -> int:
    store = PlatformStore(load_gate_config(args).db_path)
    store.set_user_role(args.user_id_arg, args.role)
    print(f"Granted {args.role} to {args.user_id_arg}")
    return EXIT_OK


def cmd_serve(args) -> int:
    from proof_gate.server import serve

    serve(args.host, args.port, args.reload)
    return EXIT_OK


def _add_output_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--json", action="store_true", help="Print the JSON document")
    p.add_argument("--download", metavar="DIR", help="Write the JSON document into this directory")
    p.add_argument("--copy", action="store_true", help="Copy the JSON document to the clipboard")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proof-gate",
        description="Proof Gate CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", help="Path to the platform database (default: PROOF_GATE_DB_PATH)")
    parser.add_argument("--state-dir", help="Directory for persisted gate state (default: PROOF_GATE_STATE_DIR)")
    parser.add_argument("--user-id", help="Run as this user id (roles come from the platform database)")
    parser.add_argument("--token", help="Run as the user behind this session token")
    parser.add_argument(
        "--role",
        action="append",
        choices=["admin", "owner", "client"],
        help="Role flag for the caller (repeatable); overrides roles stored in the database",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run the Proof Gate")
    run_parser.add_argument("--route", default=DEFAULT_ROUTE, help="Route recorded as current_route")
    _add_output_flags(run_parser)
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Validate a saved Evidence Pack")
    validate_parser.add_argument("pack", help="Path to an Evidence Pack JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    vt_parser = subparsers.add_parser("verify-token", help="Verify a pack's proof token (and signature)")
    vt_parser.add_argument("pack", help="Path to an Evidence Pack JSON file")
    vt_parser.add_argument("--public-key", help="Ed25519 public key (hex) to check the signature against")
    vt_parser.set_defaults(func=cmd_verify_token)

    sv_parser = subparsers.add_parser("schema-validate", help="Check a pack against the JSON Schema")
    sv_parser.add_argument("pack", help="Path to an Evidence Pack JSON file")
    sv_parser.set_defaults(func=cmd_schema_validate)

    for name, func, label in (
        ("build-output", cmd_build_output, "raw build output"),
        ("claim-log", cmd_claim_log, "claim log"),
    ):
        p = subparsers.add_parser(name, help=f"Manage the saved {label}")
        p.add_argument("action", choices=["set", "show", "clear"])
        p.add_argument("--file", help="Read text from this file instead of stdin (set)")
        p.set_defaults(func=func)

    issues_parser = subparsers.add_parser("issues", help="Recurring issue counters")
    issues_parser.add_argument("action", choices=["show", "reset"])
    issues_parser.set_defaults(func=cmd_issues)

    edge_parser = subparsers.add_parser("edge-invoke", help="Invoke a function and record the run")
    edge_parser.add_argument("function", help="Function name, e.g. lead-webhook")
    edge_parser.add_argument("--body", help="JSON request body")
    edge_parser.add_argument("--tenant-id", help="X-Tenant-Id header")
    edge_parser.add_argument("--authorization", help="Authorization header")
    edge_parser.set_defaults(func=cmd_edge_invoke)

    qa_parser = subparsers.add_parser("qa", help="Run the tenant-isolation QA harness")
    qa_parser.add_argument("--tenant-a", help="First tenant id (default: sampled)")
    qa_parser.add_argument("--tenant-b", help="Second tenant id (default: sampled)")
    qa_parser.add_argument("--client-token", help="Session token of a non-admin user for the role-gating probe")
    _add_output_flags(qa_parser)
    qa_parser.set_defaults(func=cmd_qa)

    sb_parser = subparsers.add_parser("support-bundle", help="Emit the legacy support bundle")
    sb_parser.add_argument("--route", default=DEFAULT_ROUTE, help="Route recorded as current_route")
    _add_output_flags(sb_parser)
    sb_parser.set_defaults(func=cmd_support_bundle)

    tenant_parser = subparsers.add_parser("tenant", help="Tenant administration")
    tenant_parser.add_argument("action", choices=["add"])
    tenant_parser.add_argument("name", help="Tenant display name")
    tenant_parser.add_argument("--api-key", help="Also register this API key for the lead webhook")
    tenant_parser.set_defaults(func=cmd_tenant)

    role_parser = subparsers.add_parser("role", help="User role administration")
    role_parser.add_argument("action", choices=["grant"])
    role_parser.add_argument("user_id_arg", metavar="user_id")
    role_parser.add_argument("role", choices=["admin", "owner", "client"])
    role_parser.set_defaults(func=cmd_role)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP functions server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except CliError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE
    except ProofGateError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
