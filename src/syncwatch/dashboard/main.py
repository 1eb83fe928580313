"""SyncWatch dashboard - FastAPI control surface over the job coordinator."""

import asyncio
import html
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse

from syncwatch.monitor.coordinator import JobCoordinator
from syncwatch.monitor.main import run_monitor
from syncwatch.shared.config import get_config
from syncwatch.shared.schemas import FileChangeRecord, JobSnapshot, JobStatus, StatusReport, get_status_emoji

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    JobStatus.IDLE: ("bg-green-500", "All jobs up to date"),
    JobStatus.SYNCING: ("bg-blue-500", "Syncing..."),
    JobStatus.PAUSED: ("bg-yellow-500", "Sync paused"),
    JobStatus.ERROR: ("bg-red-500", "Sync error"),
    JobStatus.DRIVE_NOT_MOUNTED: ("bg-orange-500", "Drive not mounted"),
    JobStatus.NOT_CONFIGURED: ("bg-gray-500", "No job configured"),
}


def create_app(coordinator: Optional[JobCoordinator] = None) -> FastAPI:
    """Build the dashboard app.

    Args:
        coordinator: A running coordinator to expose, driven by someone else's
            monitor loop. When omitted the app builds one from get_config() and
            runs the monitor loop for it in a worker thread while it is up.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        monitor_task = None
        stop_event = threading.Event()
        if getattr(app.state, "coordinator", None) is None:
            config = get_config()
            owned = JobCoordinator.from_config(config)
            app.state.coordinator = owned
            logger.info("🔍 Starting monitor loop for the dashboard")
            monitor_task = asyncio.create_task(asyncio.to_thread(run_monitor, stop_event, config, owned))
        try:
            yield
        finally:
            if monitor_task is not None:
                stop_event.set()
                await monitor_task
                app.state.coordinator = None

    app = FastAPI(
        title="SyncWatch - Dashboard",
        description="Status and controls for rclone bisync jobs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.include_router(_build_router())
    return app


def get_coordinator(request: Request) -> JobCoordinator:
    coordinator = request.app.state.coordinator
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not running")
    return coordinator


def _job_or_404(coordinator: JobCoordinator, job_id: str) -> JobSnapshot:
    try:
        return coordinator.snapshot(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")


def _control(coordinator: JobCoordinator, job_id: str, action: str) -> JobSnapshot:
    try:
        getattr(coordinator, action)(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
    return coordinator.snapshot(job_id)


def _build_router():
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "timestamp": datetime.now().astimezone().isoformat()}

    @router.get("/api/status", response_model=StatusReport)
    def api_status(coordinator: JobCoordinator = Depends(get_coordinator)) -> StatusReport:
        """Overall status, every job snapshot and the recent changes."""
        return coordinator.status_report()

    @router.get("/api/jobs", response_model=list[JobSnapshot])
    def api_jobs(coordinator: JobCoordinator = Depends(get_coordinator)) -> list[JobSnapshot]:
        return coordinator.snapshots()

    @router.get("/api/jobs/{job_id}", response_model=JobSnapshot)
    def api_job(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)) -> JobSnapshot:
        return _job_or_404(coordinator, job_id)

    @router.get("/api/changes", response_model=list[FileChangeRecord])
    def api_changes(
        job_id: Optional[str] = None, coordinator: JobCoordinator = Depends(get_coordinator)
    ) -> list[FileChangeRecord]:
        try:
            return coordinator.recent_changes(job_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")

    @router.post("/api/sync")
    def api_sync_all(coordinator: JobCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
        """Trigger a sync for every enabled job."""
        return {"results": coordinator.trigger_sync()}

    @router.post("/api/jobs/{job_id}/sync")
    def api_sync_job(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
        try:
            results = coordinator.trigger_sync(job_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
        return {"job_id": job_id, "result": results[job_id]}

    @router.post("/api/pause")
    def api_pause_all(coordinator: JobCoordinator = Depends(get_coordinator)) -> StatusReport:
        coordinator.pause()
        return coordinator.status_report()

    @router.post("/api/resume")
    def api_resume_all(coordinator: JobCoordinator = Depends(get_coordinator)) -> StatusReport:
        coordinator.resume()
        return coordinator.status_report()

    @router.post("/api/jobs/{job_id}/pause", response_model=JobSnapshot)
    def api_pause_job(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)) -> JobSnapshot:
        return _control(coordinator, job_id, "pause")

    @router.post("/api/jobs/{job_id}/resume", response_model=JobSnapshot)
    def api_resume_job(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)) -> JobSnapshot:
        return _control(coordinator, job_id, "resume")

    @router.post("/api/jobs/{job_id}/mute", response_model=JobSnapshot)
    def api_mute_job(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)) -> JobSnapshot:
        return _control(coordinator, job_id, "mute")

    @router.post("/api/jobs/{job_id}/unmute", response_model=JobSnapshot)
    def api_unmute_job(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)) -> JobSnapshot:
        return _control(coordinator, job_id, "unmute")

    @router.post("/api/jobs/{job_id}/clear-error", response_model=JobSnapshot)
    def api_clear_error(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)) -> JobSnapshot:
        return _control(coordinator, job_id, "clear_error")

    @router.get("/", response_class=HTMLResponse)
    def dashboard(coordinator: JobCoordinator = Depends(get_coordinator)) -> HTMLResponse:
        """Render the HTML overview page."""
        return HTMLResponse(render_dashboard(coordinator.status_report()))

    return router


def _render_job(job: JobSnapshot) -> str:
    bg_class, _ = STATUS_STYLES.get(job.status, ("bg-gray-400", ""))
    emoji = get_status_emoji(job.status)
    detail = ""
    if job.status == JobStatus.ERROR and job.error_message:
        detail = f'<p class="text-red-300 text-sm">{html.escape(job.error_message)}</p>'
    elif job.progress is not None:
        detail = f'<p class="text-gray-300 text-sm">{html.escape(job.progress.describe())}</p>'
    last_sync = job.last_sync_time.strftime("%Y-%m-%d %H:%M:%S") if job.last_sync_time else "never"
    flags = " ".join(flag for flag, on in (("muted", job.muted), ("disabled", not job.enabled)) if on)
    return f"""
            <div class="bg-gray-800 rounded-xl p-4 shadow-xl">
                <div class="flex justify-between items-center">
                    <h3 class="text-lg font-semibold">{emoji} {html.escape(job.name or job.job_id)}</h3>
                    <span class="{bg_class} rounded px-2 text-sm">{job.status.value}</span>
                </div>
                {detail}
                <p class="text-gray-400 text-xs">Last sync: {last_sync} {flags}</p>
            </div>"""


def render_dashboard(report: StatusReport) -> str:
    bg_class, status_text = STATUS_STYLES.get(report.status, ("bg-gray-400", "Unknown"))
    emoji = get_status_emoji(report.status)
    message = html.escape(report.error_message or status_text)
    jobs = "".join(_render_job(job) for job in report.jobs)
    changes = "".join(
        f'<li class="font-mono text-sm">{change.timestamp.strftime("%H:%M:%S")} '
        f"{change.operation.value} {html.escape(change.path)} "
        f'<span class="text-gray-500">({html.escape(change.job_name)})</span></li>'
        for change in report.recent_changes
    )
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <meta http-equiv="refresh" content="10">
    <title>SyncWatch - {report.status.value}</title>
    <script src="https://cdn.tailwindcss.com"></script>
</head>
<body class="bg-gray-900 text-white min-h-screen">
    <div class="container mx-auto px-4 py-8 max-w-4xl space-y-6">
        <div class="{bg_class} rounded-xl p-8 shadow-2xl text-center">
            <span class="text-6xl mb-4 block">{emoji}</span>
            <h2 class="text-4xl font-bold mb-2">{report.status.value}</h2>
            <p class="text-xl opacity-90">{message}</p>
        </div>
        {jobs}
        <div class="bg-gray-800 rounded-xl p-6 shadow-xl">
            <h3 class="text-xl font-semibold mb-4 border-b border-gray-700 pb-2">Recent changes</h3>
            <ul>{changes or '<li class="text-gray-400">No changes yet</li>'}</ul>
        </div>
    </div>
</body>
</html>"""


app = create_app()
