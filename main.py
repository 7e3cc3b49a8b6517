import logging

from fastapi import Depends, FastAPI, HTTPException

from recurrence import local_today
from scheduler import SchedulerManager


app = FastAPI(title="FinTrack Scheduler")

scheduler_manager = SchedulerManager()


def get_scheduler() -> SchedulerManager:
    return scheduler_manager


def _isoformat(value):
    return value.isoformat() if value else None


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health(manager: SchedulerManager = Depends(get_scheduler)):
    jobs = [
        {
            "id": job.id,
            "next_run_time": _isoformat(getattr(job, "next_run_time", None)),
        }
        for job in manager.scheduler.get_jobs()
    ]
    return {
        "status": "ok",
        "scheduler_running": manager.scheduler.running,
        "jobs": jobs,
    }


@app.get("/api/recurring/due")
def api_recurring_due(manager: SchedulerManager = Depends(get_scheduler)):
    events = manager.recurring.select_due(local_today())
    return {"items": [event.model_dump() for event in events], "count": len(events)}


@app.post("/api/jobs/{job_id}/run")
def api_run_job(job_id: str, manager: SchedulerManager = Depends(get_scheduler)):
    if job_id not in manager.jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
    logging.info(f"manual_job_run: job={job_id}")
    result = manager.run_job(job_id, source="api")
    return {"job": job_id, "result": result.model_dump(mode="json")}
