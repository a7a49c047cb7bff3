import json

import pytest

from proof_cli import EXIT_FAILED, EXIT_OK, EXIT_USAGE, main

ENV_VARS = (
    "PROOF_GATE_BACKEND_URL",
    "PROOF_GATE_SIGNING_MODE",
    "PROOF_GATE_SIGNING_KEY",
    "PROOF_GATE_SIGNING_KEY_FILE",
    "PROOF_GATE_SESSION_TOKENS_JSON",
    "PROOF_GATE_SESSION_TOKENS_FILE",
)


@pytest.fixture
def cli(tmp_path, monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    base = ["--db", str(tmp_path / "platform.db"), "--state-dir", str(tmp_path / "state")]

    def run(*argv):
        return main([*base, *argv])

    return run


@pytest.fixture
def seeded(cli, tmp_path):
    build = tmp_path / "build.log"
    build.write_text("vite v5.0.0 building for production...\n✓ built in 3.1s\n", encoding="utf-8")
    assert cli("build-output", "set", "--file", str(build)) == EXIT_OK
    assert cli("tenant", "add", "Acme Roofing") == EXIT_OK
    assert cli("tenant", "add", "Birch Dental", "--api-key", "sk_live_1") == EXIT_OK
    return cli


def _downloaded(directory):
    (path,) = list(directory.glob("evidence-pack-*.json"))
    return path


def test_admin_run_writes_a_valid_pack(seeded, tmp_path, capsys):
    out_dir = tmp_path / "packs"
    assert seeded("--role", "admin", "run", "--download", str(out_dir)) == EXIT_OK
    assert "PROOF GATE: PASS" in capsys.readouterr().out

    pack_path = str(_downloaded(out_dir))
    assert seeded("validate", pack_path) == EXIT_OK
    assert seeded("verify-token", pack_path) == EXIT_OK
    assert seeded("schema-validate", pack_path) == EXIT_OK


def test_tampered_pack_fails_token_check(seeded, tmp_path):
    out_dir = tmp_path / "packs"
    assert seeded("--role", "admin", "run", "--download", str(out_dir)) == EXIT_OK
    path = _downloaded(out_dir)
    data = json.loads(path.read_text(encoding="utf-8"))
    data["current_route"] = "/somewhere-else"
    path.write_text(json.dumps(data), encoding="utf-8")

    assert seeded("verify-token", str(path)) == EXIT_FAILED
    assert seeded("validate", str(path)) == EXIT_FAILED


def test_claim_contradiction_run_exits_failed(seeded, tmp_path, capsys):
    claim = tmp_path / "claims.txt"
    claim.write_text("The validator module does not exist.", encoding="utf-8")
    assert seeded("claim-log", "set", "--file", str(claim)) == EXIT_OK

    assert seeded("--role", "admin", "run") == EXIT_FAILED
    assert "PROOF GATE ABORTED at contradiction_detector" in capsys.readouterr().err

    capsys.readouterr()
    assert seeded("issues", "show") == EXIT_OK
    assert "proof_contradiction: 1" in capsys.readouterr().out

    assert seeded("issues", "reset") == EXIT_OK
    assert seeded("issues", "show") == EXIT_OK
    assert "No recurring issues recorded" in capsys.readouterr().out


def test_build_output_show_and_clear(seeded, capsys):
    capsys.readouterr()
    assert seeded("build-output", "show") == EXIT_OK
    assert "built in 3.1s" in capsys.readouterr().out
    assert seeded("build-output", "clear") == EXIT_OK
    capsys.readouterr()
    seeded("build-output", "show")
    assert "built in" not in capsys.readouterr().out


def test_qa_requires_admin(seeded, capsys):
    assert seeded("qa") == EXIT_USAGE
    assert "require an admin caller" in capsys.readouterr().err


def test_qa_as_admin(seeded, capsys):
    assert seeded("--role", "admin", "qa") == EXIT_OK
    assert "TEST 7 - Admin Scheduler Role Gating" in capsys.readouterr().out


def test_role_grant_feeds_user_lookup(cli):
    assert cli("role", "grant", "ops-user-1", "admin") == EXIT_OK
    assert cli("--user-id", "ops-user-1", "qa") == EXIT_OK


def test_edge_invoke_records_run(seeded, capsys):
    assert seeded("edge-invoke", "edge-preflight", "--body", '{"mode": "preflight"}') == EXIT_OK
    assert "HTTP 200" in capsys.readouterr().out
    assert seeded("edge-invoke", "lead-webhook", "--body", '{"email": "a@b.c"}') == EXIT_FAILED


def test_edge_invoke_rejects_bad_body(cli):
    assert cli("edge-invoke", "lead-webhook", "--body", "{nope") == EXIT_USAGE


def test_support_bundle_prints_json(seeded, capsys):
    capsys.readouterr()
    assert seeded("--role", "admin", "support-bundle") == EXIT_OK
    out = capsys.readouterr().out
    body = json.loads(out[out.index("{"):])
    assert body["role_flags"]["isAdmin"] is True
    assert body["normalize_test"]["status"] == 200


def test_missing_pack_file_is_usage_error(cli, tmp_path):
    assert cli("validate", str(tmp_path / "absent.json")) == EXIT_USAGE


def test_unknown_session_token(cli):
    assert cli("--token", "nope", "run") == EXIT_USAGE


def test_no_command(cli):
    assert cli() == EXIT_USAGE
