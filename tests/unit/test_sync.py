"""Unit tests for source synchronization."""

import io
import os
import shutil
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fakes.fake_channel import FakeChannel
from fakes.fake_gateway import FakeGateway

from burrow.core.models import Environment
from burrow.core.state import StateStore
from burrow.core.states import LifecycleState, Phase
from burrow.exceptions import (
    ConfigurationError,
    EnvironmentNotReadyError,
    SyncConflictError,
    TransportError,
)
from burrow.services import git_proxy
from burrow.services.sync import RefRelation, SyncBridge, remote_name
from burrow.services.transport import Capability, Session, SessionTransport

requires_git = [
    pytest.mark.git,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


class LocalSyncBridge(SyncBridge):
    """Sync bridge whose environment repository is a local bare repository."""

    def __init__(self, remote_root: Path) -> None:
        super().__init__(transport=MagicMock())
        self.remote_root = remote_root

    def git_environment(self, environment: Environment) -> dict[str, str]:
        return os.environ.copy()

    def remote_url(self, environment: Environment, project: str) -> str:
        return str(self.remote_root / f"{project}.git")

    async def ensure_remote_repository(self, environment: Environment, project: str) -> str:
        path = self.remote_url(environment, project)
        if not os.path.isdir(path):
            git(self.remote_root, "init", "--bare", "-q", path)
        return path


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit(repo: Path, filename: str, content: str) -> str:
    (repo / filename).write_text(content)
    git(repo, "add", filename)
    git(repo, "commit", "-q", "-m", f"update {filename}")
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_identity(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Deterministic git identity isolated from user and system config."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for role in ("AUTHOR", "COMMITTER"):
        monkeypatch.setenv(f"GIT_{role}_NAME", "Dev Person")
        monkeypatch.setenv(f"GIT_{role}_EMAIL", "dev@example.com")
    (tmp_path / "home").mkdir()


@pytest.fixture
def local_tree(tmp_path: Path, git_identity: None) -> Path:
    repo = tmp_path / "demo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    commit(repo, "README.md", "hello\n")
    return repo


@pytest.fixture
def remote_root(tmp_path: Path) -> Path:
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture
def bridge(remote_root: Path) -> LocalSyncBridge:
    return LocalSyncBridge(remote_root)


def clone_remote(remote_root: Path, tmp_path: Path, name: str = "other", branch: str = "main") -> Path:
    clone = tmp_path / name
    git(tmp_path, "clone", "-q", "-b", branch, str(remote_root / "demo.git"), str(clone))
    return clone


class TestPush:
    """Tests for pushing branches to an environment."""

    pytestmark = requires_git

    async def test_first_push_creates_remote_branch(
        self, bridge: LocalSyncBridge, local_tree: Path, remote_root: Path, ready_environment: Environment
    ) -> None:
        """Test the first push fast-forwards an empty remote."""
        head = git(local_tree, "rev-parse", "HEAD")

        result = await bridge.push(ready_environment, str(local_tree))

        assert result.relation is RefRelation.FAST_FORWARD
        assert result.branch == "main"
        assert result.remote_commit is None
        assert not result.forced
        assert git(remote_root / "demo.git", "rev-parse", "refs/heads/main") == head
        assert git(local_tree, "remote", "get-url", "burrow-demo") == str(remote_root / "demo.git")

    async def test_push_up_to_date(
        self, bridge: LocalSyncBridge, local_tree: Path, ready_environment: Environment
    ) -> None:
        """Test pushing an unchanged branch changes nothing."""
        await bridge.push(ready_environment, str(local_tree))

        result = await bridge.push(ready_environment, str(local_tree))

        assert result.relation is RefRelation.UP_TO_DATE
        assert not result.changed

    async def test_push_fast_forward(
        self, bridge: LocalSyncBridge, local_tree: Path, remote_root: Path, ready_environment: Environment
    ) -> None:
        """Test new local commits are pushed."""
        await bridge.push(ready_environment, str(local_tree))
        head = commit(local_tree, "main.py", "print('hi')\n")

        result = await bridge.push(ready_environment, str(local_tree))

        assert result.relation is RefRelation.FAST_FORWARD
        assert git(remote_root / "demo.git", "rev-parse", "refs/heads/main") == head

    async def test_diverged_push_refused_without_changes(
        self,
        bridge: LocalSyncBridge,
        local_tree: Path,
        remote_root: Path,
        tmp_path: Path,
        ready_environment: Environment,
    ) -> None:
        """Test a push that would drop remote commits leaves both sides untouched."""
        await bridge.push(ready_environment, str(local_tree))
        other = clone_remote(remote_root, tmp_path)
        remote_head = commit(other, "remote.txt", "edited on the instance\n")
        git(other, "push", "-q", "origin", "main")
        local_head = commit(local_tree, "local.txt", "edited locally\n")

        with pytest.raises(SyncConflictError) as exc_info:
            await bridge.push(ready_environment, str(local_tree))

        assert exc_info.value.status == "diverged"
        assert exc_info.value.resource == "demo"
        assert git(remote_root / "demo.git", "rev-parse", "refs/heads/main") == remote_head
        assert git(local_tree, "rev-parse", "refs/heads/main") == local_head

    async def test_behind_push_refused(
        self,
        bridge: LocalSyncBridge,
        local_tree: Path,
        remote_root: Path,
        tmp_path: Path,
        ready_environment: Environment,
    ) -> None:
        """Test pushing an older branch is refused."""
        await bridge.push(ready_environment, str(local_tree))
        other = clone_remote(remote_root, tmp_path)
        commit(other, "remote.txt", "edited on the instance\n")
        git(other, "push", "-q", "origin", "main")

        with pytest.raises(SyncConflictError) as exc_info:
            await bridge.push(ready_environment, str(local_tree))

        assert exc_info.value.status == "behind"

    async def test_force_push_with_lease(
        self,
        bridge: LocalSyncBridge,
        local_tree: Path,
        remote_root: Path,
        tmp_path: Path,
        ready_environment: Environment,
    ) -> None:
        """Test --force replaces diverged remote history."""
        await bridge.push(ready_environment, str(local_tree))
        other = clone_remote(remote_root, tmp_path)
        commit(other, "remote.txt", "edited on the instance\n")
        git(other, "push", "-q", "origin", "main")
        local_head = commit(local_tree, "local.txt", "edited locally\n")

        result = await bridge.push(ready_environment, str(local_tree), force=True)

        assert result.forced
        assert result.relation is RefRelation.DIVERGED
        assert git(remote_root / "demo.git", "rev-parse", "refs/heads/main") == local_head

    async def test_branch_without_commits(
        self, bridge: LocalSyncBridge, local_tree: Path, ready_environment: Environment
    ) -> None:
        """Test pushing a branch that does not exist locally."""
        with pytest.raises(ConfigurationError, match="no commits"):
            await bridge.push(ready_environment, str(local_tree), branch="feature")


class TestPull:
    """Tests for pulling branches from an environment."""

    pytestmark = requires_git

    async def test_pull_fast_forwards_checked_out_branch(
        self,
        bridge: LocalSyncBridge,
        local_tree: Path,
        remote_root: Path,
        tmp_path: Path,
        ready_environment: Environment,
    ) -> None:
        """Test remote commits are fast-forwarded into the working tree."""
        await bridge.push(ready_environment, str(local_tree))
        other = clone_remote(remote_root, tmp_path)
        remote_head = commit(other, "remote.txt", "edited on the instance\n")
        git(other, "push", "-q", "origin", "main")

        result = await bridge.pull(ready_environment, str(local_tree))

        assert result.relation is RefRelation.BEHIND
        assert git(local_tree, "rev-parse", "HEAD") == remote_head
        assert (local_tree / "remote.txt").read_text() == "edited on the instance\n"

    async def test_pull_other_branch_updates_ref(
        self,
        bridge: LocalSyncBridge,
        local_tree: Path,
        remote_root: Path,
        tmp_path: Path,
        ready_environment: Environment,
    ) -> None:
        """Test a branch that is not checked out is moved without touching the tree."""
        git(local_tree, "branch", "feature")
        await bridge.push(ready_environment, str(local_tree), branch="feature")
        other = clone_remote(remote_root, tmp_path, branch="feature")
        remote_head = commit(other, "feature.txt", "feature work\n")
        git(other, "push", "-q", "origin", "feature")

        await bridge.pull(ready_environment, str(local_tree), branch="feature")

        assert git(local_tree, "rev-parse", "refs/heads/feature") == remote_head
        assert not (local_tree / "feature.txt").exists()

    async def test_pull_up_to_date(
        self, bridge: LocalSyncBridge, local_tree: Path, ready_environment: Environment
    ) -> None:
        """Test pulling when local already has the remote commit."""
        await bridge.push(ready_environment, str(local_tree))
        commit(local_tree, "ahead.txt", "local only\n")

        result = await bridge.pull(ready_environment, str(local_tree))

        assert result.relation is RefRelation.UP_TO_DATE

    async def test_diverged_pull_refused(
        self,
        bridge: LocalSyncBridge,
        local_tree: Path,
        remote_root: Path,
        tmp_path: Path,
        ready_environment: Environment,
    ) -> None:
        """Test diverged histories are never merged."""
        await bridge.push(ready_environment, str(local_tree))
        other = clone_remote(remote_root, tmp_path)
        commit(other, "remote.txt", "edited on the instance\n")
        git(other, "push", "-q", "origin", "main")
        local_head = commit(local_tree, "local.txt", "edited locally\n")

        with pytest.raises(SyncConflictError, match="diverged"):
            await bridge.pull(ready_environment, str(local_tree))

        assert git(local_tree, "rev-parse", "HEAD") == local_head

    async def test_missing_remote_branch(
        self, bridge: LocalSyncBridge, local_tree: Path, ready_environment: Environment
    ) -> None:
        """Test pulling a branch the environment does not have."""
        await bridge.push(ready_environment, str(local_tree))

        with pytest.raises(ConfigurationError, match="does not exist on demo"):
            await bridge.pull(ready_environment, str(local_tree), branch="feature")


class TestPreconditions:
    """Tests for checks made before any git or broker traffic."""

    async def test_environment_not_ready(
        self, bridge: LocalSyncBridge, tmp_path: Path, ready_environment: Environment
    ) -> None:
        """Test sync requires a Ready environment."""
        booting = ready_environment.with_state(LifecycleState(Phase.BOOTING))

        with pytest.raises(EnvironmentNotReadyError):
            await bridge.push(booting, str(tmp_path))

        with pytest.raises(EnvironmentNotReadyError):
            await bridge.pull(booting, str(tmp_path))

    @pytest.mark.git
    @pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
    async def test_not_a_repository(
        self, bridge: LocalSyncBridge, tmp_path: Path, git_identity: None, ready_environment: Environment
    ) -> None:
        """Test a directory outside git is rejected."""
        plain = tmp_path / "plain"
        plain.mkdir()
        with patch.dict(os.environ, {"GIT_CEILING_DIRECTORIES": str(tmp_path)}):
            with pytest.raises(ConfigurationError, match="not a git repository"):
                await bridge.push(ready_environment, str(plain))

    def test_missing_git_executable(self, ready_environment: Environment, tmp_path: Path) -> None:
        """Test a missing git binary is a configuration error."""
        bridge = SyncBridge(transport=MagicMock(), git="git-does-not-exist")

        with pytest.raises(ConfigurationError, match="git-does-not-exist not found"):
            bridge.current_branch(str(tmp_path))


class TestRemotes:
    """Tests for remote naming and registration."""

    def test_remote_name(self) -> None:
        """Test remotes are named after the environment."""
        assert remote_name("demo") == "burrow-demo"

    def test_git_environment_routes_through_proxy(self, ready_environment: Environment) -> None:
        """Test git's SSH transport is the broker proxy."""
        bridge = SyncBridge(transport=MagicMock(), python="/usr/bin/python3")

        env = bridge.git_environment(ready_environment)

        assert env["GIT_SSH_COMMAND"] == "/usr/bin/python3 -m burrow.services.git_proxy demo"
        assert env["GIT_SSH_VARIANT"] == "simple"

    def test_remote_url(self, ready_environment: Environment) -> None:
        """Test the URL names the user, the proxy host alias and the bare repository."""
        bridge = SyncBridge(transport=MagicMock())

        assert bridge.remote_url(ready_environment, "demo") == "ubuntu@burrow-demo:/home/ubuntu/repos/demo.git"

    def test_project_name_falls_back_to_directory(self, ready_environment: Environment, tmp_path: Path) -> None:
        """Test environments without a project use the directory name."""
        bridge = SyncBridge(transport=MagicMock())
        tree = tmp_path / "my-app"

        assert bridge.project_name(ready_environment, str(tree)) == "demo"
        assert bridge.project_name(ready_environment.with_state(ready_environment.state, project=None), str(tree)) == "my-app"

    @pytest.mark.git
    @pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
    def test_add_and_remove_remote(self, bridge: LocalSyncBridge, local_tree: Path, ready_environment: Environment) -> None:
        """Test remotes are registered once, repointed and removed."""
        bridge.add_remote(str(local_tree), ready_environment, "demo")
        bridge.add_remote(str(local_tree), ready_environment, "other")

        assert git(local_tree, "remote", "get-url", "burrow-demo").endswith("other.git")
        assert bridge.remove_remote(str(local_tree), "demo") is True
        assert bridge.remove_remote(str(local_tree), "demo") is False


class TestRemoteRepository:
    """Tests for preparing the bare repository on the instance."""

    def _transport(self) -> SessionTransport:
        return SessionTransport(
            gateway_factory=lambda region, namespace: FakeGateway(),
            channel_factory=lambda session: FakeChannel(session),
        )

    async def test_creates_bare_repository(self, ready_environment: Environment) -> None:
        """Test the repository is created over a pipe session."""
        bridge = SyncBridge(self._transport())

        with patch.object(Session, "exec", return_value=0) as mock_exec:
            path = await bridge.ensure_remote_repository(ready_environment, "demo")

        assert path == "/home/ubuntu/repos/demo.git"
        command = mock_exec.call_args.args[0]
        assert "test -d /home/ubuntu/repos/demo.git" in command
        assert "git init --bare -q /home/ubuntu/repos/demo.git" in command

    async def test_failure_reported(self, ready_environment: Environment) -> None:
        """Test a failing remote command is a transport error."""
        bridge = SyncBridge(self._transport())

        with patch.object(Session, "exec", return_value=1):
            with pytest.raises(TransportError, match="failed to prepare"):
                await bridge.ensure_remote_repository(ready_environment, "demo")


def tracked_content(repo: Path) -> dict[str, bytes]:
    files = git(repo, "ls-files").splitlines()
    return {name: (repo / name).read_bytes() for name in files}


class TestRoundTrip:
    """Tests for moving work through the environment's repository."""

    pytestmark = requires_git

    async def test_push_then_pull_into_fresh_clone(
        self,
        bridge: LocalSyncBridge,
        local_tree: Path,
        tmp_path: Path,
        ready_environment: Environment,
    ) -> None:
        """Test a pushed branch arrives byte for byte in another tree."""
        git(tmp_path, "clone", "-q", str(local_tree), str(tmp_path / "fresh"))
        fresh = tmp_path / "fresh"
        (local_tree / "src").mkdir()
        (local_tree / "src" / "blob.bin").write_bytes(bytes(range(256)) * 4)
        git(local_tree, "add", "src/blob.bin")
        git(local_tree, "commit", "-q", "-m", "add binary")
        head = commit(local_tree, "notes.txt", "line one\r\nline two\n")

        pushed = await bridge.push(ready_environment, str(local_tree))
        pulled = await bridge.pull(ready_environment, str(fresh))

        assert pushed.relation is RefRelation.FAST_FORWARD
        assert pulled.relation is RefRelation.BEHIND
        assert pulled.remote_commit == head
        assert git(fresh, "rev-parse", "HEAD") == head
        assert git(fresh, "status", "--porcelain") == ""
        assert tracked_content(fresh) == tracked_content(local_tree)


class TestGitProxyRelay:
    """Tests for relaying git's SSH streams over a pipe session."""

    @pytest.fixture
    def proxy(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        ready_environment: Environment,
    ) -> FakeGateway:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
        StateStore().upsert(ready_environment)
        gateway = FakeGateway()
        monkeypatch.setattr(
            git_proxy,
            "SessionTransport",
            lambda tag_namespace: SessionTransport(
                gateway_factory=lambda region, namespace: gateway,
                channel_factory=lambda session: FakeChannel(session),
                tag_namespace=tag_namespace,
            ),
        )
        return gateway

    def test_streams_relayed_and_status_propagated(
        self, proxy: FakeGateway, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test git's stdin reaches the remote command and its exit status comes back."""
        stdin = io.TextIOWrapper(io.BytesIO(b"0009done\n0000"))
        stdout = io.TextIOWrapper(io.BytesIO())
        monkeypatch.setattr(sys, "stdin", stdin)
        monkeypatch.setattr(sys, "stdout", stdout)
        received = []

        def remote(command, source, sink, errors):
            received.append((command, source.read()))
            sink.write(b"0008NAK\n")
            errors.write(b"remote: counting objects\n")
            return 3

        with patch.object(Session, "exec", autospec=True) as mock_exec:
            mock_exec.side_effect = lambda session, *args: remote(*args)
            code = git_proxy.main(
                ["demo", "ubuntu@burrow-demo", "git-upload-pack '/home/ubuntu/repos/demo.git'"]
            )

        assert code == 3
        assert received == [("git-upload-pack '/home/ubuntu/repos/demo.git'", b"0009done\n0000")]
        assert stdout.buffer.getvalue() == b"0008NAK\n"
        assert mock_exec.call_args.args[0].capability is Capability.PIPE
        assert proxy.opened_sessions == proxy.closed_sessions == ["session-1"]

    def test_environment_not_ready(
        self,
        proxy: FakeGateway,
        ready_environment: Environment,
        capsys: pytest.CaptureFixture,
    ) -> None:
        """Test a non-Ready environment fails like an unreachable ssh host."""
        StateStore().upsert(ready_environment.with_state(LifecycleState(Phase.BOOTING)))

        code = git_proxy.main(["demo", "ubuntu@burrow-demo", "git-receive-pack 'x.git'"])

        assert code == 255
        assert proxy.opened_sessions == []
        assert "sessions require Ready" in capsys.readouterr().err
