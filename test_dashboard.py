import inspect
import json
import time

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from syncwatch.dashboard.main import create_app
from syncwatch.monitor.coordinator import JobCoordinator
from syncwatch.shared.config import AppConfig, MonitorConfig, PathsConfig, WatcherConfig, set_config
from syncwatch.shared.schemas import Job, JobStatus, get_status_emoji


class RecordingRunner:
    def __init__(self):
        self.started = []

    def run_sync(self, job):
        self.started.append(job.id)


class SilentNotifier:
    def notify(self, job_name, changes):
        pass

    def notify_error(self, job_name, message):
        pass


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def coordinator(tmp_path, runner):
    job = Job(id="docs0000", name="Docs", remote="nas:", remote_path="Docs", local_path="/data/Docs", enabled=True)
    config = AppConfig(jobs=[job], paths=PathsConfig(log_dir=str(tmp_path), lock_dir=str(tmp_path)))
    return JobCoordinator(config, runner, SilentNotifier())


@pytest.fixture
def client(coordinator):
    return TestClient(create_app(coordinator))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_status_reflects_log_lines(client, coordinator):
    coordinator.handle_lines(
        "docs0000",
        [
            "2026-02-14 10:30:00 - Starting bisync",
            json.dumps({"level": "info", "msg": "Copied (new)", "object": "a.txt", "time": "2026-02-14T10:30:01Z"}),
        ],
    )

    data = client.get("/api/status").json()

    assert data["status"] == "SYNCING"
    assert data["jobs"][0]["job_id"] == "docs0000"
    assert data["recent_changes"][0]["path"] == "a.txt"
    assert client.get("/api/changes", params={"job_id": "docs0000"}).json()[0]["operation"] == "created"


def test_jobs_listing(client):
    jobs = client.get("/api/jobs").json()
    assert [job["name"] for job in jobs] == ["Docs"]
    assert client.get("/api/jobs/docs0000").json()["status"] == "IDLE"


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/jobs/missing"),
        ("get", "/api/changes?job_id=missing"),
        ("post", "/api/jobs/missing/sync"),
        ("post", "/api/jobs/missing/pause"),
        ("post", "/api/jobs/missing/resume"),
        ("post", "/api/jobs/missing/mute"),
        ("post", "/api/jobs/missing/unmute"),
        ("post", "/api/jobs/missing/clear-error"),
    ],
)
def test_unknown_job_is_404(client, method, path):
    response = getattr(client, method)(path)
    assert response.status_code == 404, f"{method.upper()} {path} returned {response.status_code}"


def test_manual_sync(client, runner):
    response = client.post("/api/jobs/docs0000/sync")
    assert response.json() == {"job_id": "docs0000", "result": "STARTED"}
    assert runner.started == ["docs0000"]

    # The lock created by the first trigger blocks a second one
    assert client.post("/api/sync").json() == {"results": {"docs0000": "LOCKED"}}


def test_pause_and_resume(client, runner):
    assert client.post("/api/pause").json()["status"] == "PAUSED"
    assert client.post("/api/jobs/docs0000/sync").json()["result"] == "PAUSED"

    assert client.post("/api/jobs/docs0000/resume").json()["status"] == "IDLE"
    assert client.post("/api/jobs/docs0000/pause").json()["paused"] is True
    assert client.post("/api/resume").json()["status"] == "IDLE"
    assert runner.started == []


def test_mute_and_clear_error(client, coordinator):
    coordinator.handle_lines("docs0000", ["2026-02-14 10:31:00 - Bisync failed with exit code 2"])

    assert client.post("/api/jobs/docs0000/mute").json()["muted"] is True
    assert client.post("/api/jobs/docs0000/unmute").json()["muted"] is False

    job = client.get("/api/jobs/docs0000").json()
    assert job["status"] == "ERROR"
    assert "exit code 2" in job["error_message"]

    cleared = client.post("/api/jobs/docs0000/clear-error").json()
    assert cleared["status"] == "IDLE"
    assert cleared["error_message"] is None


def test_html_page(client, coordinator):
    coordinator.handle_lines("docs0000", ["2026-02-14 10:31:00 - Bisync failed with exit code 2"])

    response = client.get("/")

    assert response.status_code == 200
    assert "Bisync failed with exit code 2" in response.text
    assert "Docs" in response.text
    assert get_status_emoji(JobStatus.ERROR) in response.text


def test_standalone_app_runs_monitor_loop(tmp_path):
    volume = tmp_path / "Volume"
    job = Job(
        id="docs0000",
        name="Docs",
        remote="nas:",
        remote_path="Docs",
        local_path=str(volume / "Docs"),
        mount_path=str(volume),
        enabled=True,
    )
    status_file = tmp_path / "status.json"
    set_config(
        AppConfig(
            jobs=[job],
            paths=PathsConfig(log_dir=str(tmp_path / "logs"), lock_dir=str(tmp_path / "locks")),
            watcher=WatcherConfig(poll_interval_seconds=0.05, mount_check_interval_seconds=0.05),
            monitor=MonitorConfig(status_file=str(status_file), log_file=None),
        )
    )
    try:
        with TestClient(create_app()) as client:
            assert client.get("/api/jobs/docs0000").json()["status"] == "DRIVE_NOT_MOUNTED"

            (volume / "Docs").mkdir(parents=True)
            for _ in range(100):
                if client.get("/api/jobs/docs0000").json()["status"] == "IDLE":
                    break
                time.sleep(0.05)

            assert client.get("/api/jobs/docs0000").json()["status"] == "IDLE"
            assert json.loads(status_file.read_text())["jobs"][0]["job_id"] == "docs0000"
    finally:
        set_config(None)


def test_routes_run_in_threadpool(client):
    routes = [route for route in client.app.routes if isinstance(route, APIRoute)]
    assert routes
    for route in routes:
        assert not inspect.iscoroutinefunction(route.endpoint), f"{route.path} is declared async"
