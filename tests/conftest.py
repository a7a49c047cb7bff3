import pytest

from proof_gate.auth import SessionAuth
from proof_gate.config import GateConfig
from proof_gate.crypto import Ed25519KeyPair
from proof_gate.ops_stats import OPS_STATS
from proof_gate.server import PlatformGateway
from proof_gate.store import PlatformStore

ADMIN_TOKEN = "tok-admin"
CLIENT_TOKEN = "tok-client"
ADMIN_USER = "admin-user-0001"
CLIENT_USER = "client-user-0002"


@pytest.fixture(autouse=True)
def _reset_ops_stats():
    OPS_STATS.reset()
    yield
    OPS_STATS.reset()


@pytest.fixture
def gate_config(tmp_path) -> GateConfig:
    return GateConfig(
        db_path=str(tmp_path / "platform.db"),
        state_dir=str(tmp_path / "state"),
        webhook_rate_limit="off",
    )


@pytest.fixture
def store(gate_config) -> PlatformStore:
    return PlatformStore(gate_config.db_path)


@pytest.fixture
def session_auth() -> SessionAuth:
    return SessionAuth(token_to_user={ADMIN_TOKEN: ADMIN_USER, CLIENT_TOKEN: CLIENT_USER}, configured=True)


@pytest.fixture
def signing_key() -> Ed25519KeyPair:
    return Ed25519KeyPair.generate("test-signer")


@pytest.fixture
def gateway(gate_config, store, session_auth, signing_key) -> PlatformGateway:
    store.set_user_role(ADMIN_USER, "admin")
    store.set_user_role(CLIENT_USER, "client")
    return PlatformGateway(gate_config, store=store, auth=session_auth, signing_key=signing_key)
