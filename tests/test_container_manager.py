"""
Unit Tests — Container Manager
==============================
Launch configuration, status tracking, idempotent cleanup and sweeps,
all with a mocked Docker client.

No real Docker daemon is required to run these tests.
"""
from unittest.mock import MagicMock, patch

import pytest
import requests
from docker import errors as docker_errors

from testfleet.core.constants import ARTIFACT_MOUNT_TARGET, KEEPALIVE_COMMAND, RUN_LABEL, SOURCE_MOUNT_TARGET
from testfleet.core.errors import ImageNotFound, LaunchFailure, RuntimeUnavailable
from testfleet.executor.container_manager import ContainerManager
from testfleet.models.execution_unit import ExecutionUnit
from testfleet.models.managed_container import ContainerStatus, ManagedContainer


def _client(short_id="abc123def456"):
    client = MagicMock()
    client.containers.run.return_value = MagicMock(short_id=short_id)
    return client


def _tracked(manager, container_id):
    manager.register(ManagedContainer(container_id=container_id, name=container_id, image="img"))


# ---------------------------------------------------------------------------
# 1. Launch
# ---------------------------------------------------------------------------
class TestLaunch:

    def test_launch_test_container(self):
        client = _client()
        manager = ContainerManager("run-1", client=client)
        unit = ExecutionUnit(unit_id="suite", image="tests:latest", command="pytest", cpu_slots=2)

        managed = manager.launch_test(unit, mem_limit=512 * 1024 * 1024)

        assert managed.container_id == "abc123def456"
        assert managed.status == ContainerStatus.RUNNING
        assert managed.mounts == []
        assert manager.active_ids() == ["abc123def456"]

        kwargs = client.containers.run.call_args.kwargs
        assert kwargs["image"] == "tests:latest"
        assert kwargs["command"] == KEEPALIVE_COMMAND
        assert kwargs["detach"] is True
        assert kwargs["working_dir"] == "/app"
        assert kwargs["nano_cpus"] == 2_000_000_000
        assert kwargs["mem_limit"] == kwargs["memswap_limit"] == 512 * 1024 * 1024
        assert kwargs["labels"][RUN_LABEL] == "run-1"
        assert kwargs["mounts"] == []
        assert kwargs["name"].startswith("testfleet-suite-")

    def test_launch_build_mounts_source_read_only(self, tmp_path):
        client = _client()
        manager = ContainerManager("run-1", client=client)
        project = tmp_path / "project"
        project.mkdir()
        unit = ExecutionUnit(unit_id="build", image="rust:1", command="cargo build",
                             phase="build", project_root=str(project))

        managed = manager.launch_build(unit, str(tmp_path / "artifacts"))

        assert managed.artifact_dir is not None
        assert managed.artifact_dir.startswith(str(tmp_path / "artifacts"))
        mounts = client.containers.run.call_args.kwargs["mounts"]
        source, artifacts = mounts
        assert source["Target"] == SOURCE_MOUNT_TARGET
        assert source["ReadOnly"] is True
        assert artifacts["Target"] == ARTIFACT_MOUNT_TARGET
        assert artifacts["ReadOnly"] is False
        assert artifacts["Source"] == managed.artifact_dir

    def test_launch_build_missing_project_root(self, tmp_path):
        manager = ContainerManager("run-1", client=_client())
        unit = ExecutionUnit(unit_id="build", image="i", command="c",
                             phase="build", project_root=str(tmp_path / "missing"))
        with pytest.raises(LaunchFailure):
            manager.launch_build(unit, str(tmp_path / "artifacts"))

    def test_image_not_found(self):
        client = _client()
        client.images.get.side_effect = docker_errors.ImageNotFound("no such image")
        manager = ContainerManager("run-1", client=client)

        with pytest.raises(ImageNotFound) as exc:
            manager.launch("missing:latest", unit_id="u")
        assert exc.value.image == "missing:latest"
        client.containers.run.assert_not_called()
        assert manager.active_ids() == []

    def test_runtime_rejection_is_launch_failure(self):
        client = _client()
        client.containers.run.side_effect = docker_errors.APIError("no resources")
        manager = ContainerManager("run-1", client=client)
        with pytest.raises(LaunchFailure):
            manager.launch("img", unit_id="u")
        assert manager.active_ids() == []

    def test_image_not_found_is_a_launch_failure(self):
        assert issubclass(ImageNotFound, LaunchFailure)


# ---------------------------------------------------------------------------
# 2. Runtime connection & tracking
# ---------------------------------------------------------------------------
class TestRuntime:

    def test_ping_failure_raises_runtime_unavailable(self):
        client = MagicMock()
        client.ping.side_effect = docker_errors.DockerException("socket missing")
        with pytest.raises(RuntimeUnavailable):
            ContainerManager("run-1", client=client).ping()

    @patch("testfleet.executor.container_manager.docker")
    def test_client_connection_failure(self, mock_docker):
        mock_docker.from_env.side_effect = docker_errors.DockerException("no daemon")
        with pytest.raises(RuntimeUnavailable):
            ContainerManager("run-1").ping()

    @pytest.mark.parametrize("docker_status, expected", [
        ("running", ContainerStatus.RUNNING),
        ("created", ContainerStatus.LAUNCHING),
        ("exited", ContainerStatus.EXITED),
        ("dead", ContainerStatus.EXITED),
    ])
    def test_track_maps_status(self, docker_status, expected):
        client = MagicMock()
        client.containers.get.return_value = MagicMock(status=docker_status)
        manager = ContainerManager("run-1", client=client)
        _tracked(manager, "c1")
        assert manager.track("c1") == expected
        assert manager.get("c1").status == expected

    def test_track_externally_removed(self):
        client = MagicMock()
        client.containers.get.side_effect = docker_errors.NotFound("gone")
        manager = ContainerManager("run-1", client=client)
        assert manager.track("c1") == ContainerStatus.NOT_FOUND


# ---------------------------------------------------------------------------
# 3. Cleanup
# ---------------------------------------------------------------------------
class TestCleanup:

    def test_cleanup_stops_running_then_removes(self):
        client = MagicMock()
        container = MagicMock(status="running")
        client.containers.get.return_value = container
        manager = ContainerManager("run-1", client=client, stop_timeout=3)
        _tracked(manager, "c1")

        assert manager.cleanup("c1") is True
        container.stop.assert_called_once_with(timeout=3)
        container.remove.assert_called_once_with(force=True)
        assert manager.active_ids() == []

    def test_cleanup_is_idempotent(self):
        client = MagicMock()
        container = MagicMock(status="exited")
        client.containers.get.side_effect = [container, docker_errors.NotFound("gone")]
        manager = ContainerManager("run-1", client=client)
        _tracked(manager, "c1")

        assert manager.cleanup("c1") is True
        assert manager.cleanup("c1") is True
        container.stop.assert_not_called()

    def test_cleanup_of_unknown_container_succeeds(self):
        client = MagicMock()
        client.containers.get.side_effect = docker_errors.NotFound("gone")
        assert ContainerManager("run-1", client=client).cleanup("never-existed") is True

    def test_cleanup_failure_reported_not_raised(self):
        client = MagicMock()
        container = MagicMock(status="exited")
        container.remove.side_effect = docker_errors.APIError("device busy")
        client.containers.get.return_value = container
        manager = ContainerManager("run-1", client=client)
        _tracked(manager, "c1")

        assert manager.cleanup("c1") is False
        assert manager.active_ids() == ["c1"]

    def test_cleanup_survives_dropped_connection(self):
        client = MagicMock()
        client.containers.get.side_effect = requests.exceptions.ConnectionError("daemon gone")
        manager = ContainerManager("run-1", client=client)
        _tracked(manager, "c1")

        assert manager.cleanup("c1") is False
        assert manager.stop_all(["c1"]) == 0
        assert manager.kill_all(["c1"]) == 0
        assert manager.active_ids() == ["c1"]

    def test_cleanup_all_is_partial_failure_tolerant(self):
        client = MagicMock()
        good = MagicMock(status="exited")
        bad = MagicMock(status="exited")
        bad.remove.side_effect = docker_errors.APIError("busy")
        client.containers.get.side_effect = lambda cid: bad if cid == "c2" else good
        manager = ContainerManager("run-1", client=client)
        for cid in ("c1", "c2", "c3"):
            _tracked(manager, cid)

        report = manager.cleanup_all()

        assert report.total == 3
        assert report.succeeded == 2
        assert report.failed == 1
        assert report.failed_ids == ["c2"]

    def test_cleanup_completed_only_removes_exited(self):
        client = MagicMock()
        running = MagicMock(status="running")
        exited = MagicMock(status="exited")
        client.containers.get.side_effect = lambda cid: exited if cid == "done" else running
        manager = ContainerManager("run-1", client=client)
        _tracked(manager, "done")
        _tracked(manager, "busy")

        assert manager.cleanup_completed() == 1
        assert manager.active_ids() == ["busy"]

    def test_sweep_removes_labelled_leftovers(self):
        client = MagicMock()
        leftovers = [MagicMock(short_id="x1"), MagicMock(short_id="x2")]
        client.containers.list.return_value = leftovers
        manager = ContainerManager("run-9", client=client)
        _tracked(manager, "x1")

        report = manager.sweep_run_containers()

        client.containers.list.assert_called_once_with(all=True, filters={"label": f"{RUN_LABEL}=run-9"})
        assert report.total == 2
        assert report.succeeded == 2
        for container in leftovers:
            container.remove.assert_called_once_with(force=True)
        assert manager.active_ids() == []


# ---------------------------------------------------------------------------
# 4. Bulk stop / kill
# ---------------------------------------------------------------------------
class TestBulkSignals:

    def test_stop_all_uses_grace_period(self):
        client = MagicMock()
        container = MagicMock()
        client.containers.get.return_value = container
        manager = ContainerManager("run-1", client=client)
        for cid in ("a", "b", "c"):
            _tracked(manager, cid)

        assert manager.stop_all(timeout=5) == 3
        assert container.stop.call_count == 3
        container.stop.assert_called_with(timeout=5)

    def test_kill_all_tolerates_vanished_containers(self):
        client = MagicMock()
        alive = MagicMock()

        def lookup(cid):
            if cid == "a":
                return alive
            raise docker_errors.NotFound("gone")

        client.containers.get.side_effect = lookup
        manager = ContainerManager("run-1", client=client)

        assert manager.kill_all(["a", "b"]) == 1
        alive.kill.assert_called_once()

    def test_empty_id_list(self):
        manager = ContainerManager("run-1", client=MagicMock())
        assert manager.stop_all([]) == 0
        assert manager.kill_all([]) == 0
