"""Pytest configuration and fixtures for burrow tests."""

import os
import signal
import sys
from collections.abc import Generator
from pathlib import Path

import pytest
from moto import mock_aws

from burrow.core.config import Settings
from burrow.core.models import Environment, Profile
from burrow.core.state import StateStore
from burrow.core.states import LifecycleState, Phase

unit_root = Path(__file__).parent
if str(unit_root) not in sys.path:
    sys.path.insert(0, str(unit_root))

from fakes.fake_clock import FakeClock  # noqa: E402
from fakes.fake_gateway import FakeGateway  # noqa: E402

TEST_SSH_PUBLIC_KEY = (
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIBvX0hL8eV1kz7Jm0aW8o5S1cDQ0xqZ8hFv6yQp3mN4r dev@laptop"
)


@pytest.fixture(autouse=True)
def clean_burrow_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Isolate tests from the developer's burrow state and configuration.

    Yields
    ------
    None
        Control back to test with ``BURROW_DIR`` pointing at a temporary
        directory and no ``BURROW_CONFIG`` or ``BURROW_DEBUG`` set
    """
    monkeypatch.setenv("BURROW_DIR", str(tmp_path / "burrow-state"))
    monkeypatch.delenv("BURROW_CONFIG", raising=False)
    monkeypatch.delenv("BURROW_DEBUG", raising=False)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    yield

    signal.signal(signal.SIGTERM, original_sigterm)


@pytest.fixture
def aws_credentials() -> Generator[None, None, None]:
    """Fixture to set AWS credentials for testing with proper cleanup.

    Sets mock AWS credentials in environment variables for the duration of the test,
    then restores the original environment state.

    Yields
    ------
    None
        Control back to test after setting credentials
    """
    old_access_key = os.environ.get("AWS_ACCESS_KEY_ID")
    old_secret_key = os.environ.get("AWS_SECRET_ACCESS_KEY")
    old_region = os.environ.get("AWS_DEFAULT_REGION")

    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"

    yield

    if old_access_key is not None:
        os.environ["AWS_ACCESS_KEY_ID"] = old_access_key
    else:
        os.environ.pop("AWS_ACCESS_KEY_ID", None)

    if old_secret_key is not None:
        os.environ["AWS_SECRET_ACCESS_KEY"] = old_secret_key
    else:
        os.environ.pop("AWS_SECRET_ACCESS_KEY", None)

    if old_region is not None:
        os.environ["AWS_DEFAULT_REGION"] = old_region
    else:
        os.environ.pop("AWS_DEFAULT_REGION", None)


@pytest.fixture(scope="function")
def mocked_aws(aws_credentials, monkeypatch: pytest.MonkeyPatch):
    """Mock all AWS interactions, with AWS managed IAM policies available."""
    monkeypatch.setenv("MOTO_IAM_LOAD_MANAGED_POLICIES", "true")
    with mock_aws():
        yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def store(state_dir: Path) -> StateStore:
    """State store in a temporary directory with a short lock timeout."""
    return StateStore(state_dir, lock_timeout=0.5)


@pytest.fixture
def settings() -> Settings:
    """Settings with short deadlines suited to a fake clock."""
    return Settings(
        region="us-east-1",
        boot_timeout=60.0,
        terminate_timeout=30.0,
        poll_base_delay=1.0,
        poll_max_delay=4.0,
        lock_timeout=0.5,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def profile() -> Profile:
    return Profile(instance_type="t3.micro")


@pytest.fixture
def ready_environment() -> Environment:
    """A Ready environment as the transport and sync bridge receive it."""
    return Environment(
        name="demo",
        region="us-east-1",
        profile="default",
        state=LifecycleState(Phase.READY),
        instance_id="i-0123456789abcdef0",
        infrastructure="us-east-1",
        project="demo",
    )


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Temporary config file path exported as ``BURROW_CONFIG``.

    The file is not created; tests write the content they need.
    """
    config_path = tmp_path / "burrow.yaml"
    monkeypatch.setenv("BURROW_CONFIG", str(config_path))
    return config_path


@pytest.fixture
def ssh_public_key() -> str:
    return TEST_SSH_PUBLIC_KEY
