import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import proof_gate

    # Lazy attribute access
    assert hasattr(proof_gate, "ProofGate")
    assert hasattr(proof_gate, "create_app")
    assert "QAHarness" in dir(proof_gate)

    from proof_gate import PlatformGateway, PlatformStore, generate_proof_token, validate_evidence_pack  # noqa: F401

    importlib.reload(proof_gate)


def test_unknown_attribute_raises():
    import proof_gate

    try:
        proof_gate.NoSuchThing  # noqa: B018
    except AttributeError as e:
        assert "NoSuchThing" in str(e)
    else:
        raise AssertionError("expected AttributeError")


def test_version_export_matches_pyproject():
    import proof_gate

    assert proof_gate.__version__ == _read_pyproject_version()
