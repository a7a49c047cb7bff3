import json
from datetime import datetime, timezone

from proof_gate.export import copy_json, download_json, to_pretty_json
from proof_gate.recorder import StepOutcome


def test_copy_success():
    seen = []
    result = copy_json({"a": 1}, copier=lambda text: seen.append(text) or True)
    assert result.copied is True
    assert result.fallback_text is None
    assert json.loads(seen[0]) == {"a": 1}


def test_copy_refused_falls_back_to_text():
    result = copy_json({"a": 1}, copier=lambda text: False)
    assert result.copied is False
    assert json.loads(result.fallback_text) == {"a": 1}


def test_copy_raising_is_not_an_error():
    def broken(text):
        raise OSError("no display")

    result = copy_json({"a": 1}, copier=broken)
    assert result.copied is False
    assert result.fallback_text is not None


def test_download_naming(tmp_path):
    now = datetime(2026, 10, 18, 9, 30, 15, tzinfo=timezone.utc)
    path = download_json({"ok": True}, str(tmp_path / "out"), prefix="support-bundle", now=now)
    assert path.name == "support-bundle-20261018T093015Z.json"
    assert json.loads(path.read_text(encoding="utf-8")) == {"ok": True}


def test_pretty_json_uses_to_dict():
    text = to_pretty_json(StepOutcome.skipped("no tenants"))
    assert json.loads(text) == {"status": "skip", "reason": "no tenants", "data": None}
    assert "\n  " in text
