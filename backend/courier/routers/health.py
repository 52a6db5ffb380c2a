from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, func, select, text

from courier.db import get_session
from courier.models.message import Message

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    counts: dict[str, int] = {}
    try:
        session.exec(text("SELECT 1"))
        rows = session.exec(
            select(Message.status, func.count()).group_by(Message.status)
        ).all()
        counts = {status: count for status, count in rows}
    except Exception as exc:
        db_status = f"error: {exc}"

    # Scheduler clock status
    scheduler_status: dict = {"status": "disabled"}
    clock = getattr(request.app.state, "clock", None)
    if clock is not None:
        scheduler_status = {"status": "running" if clock.running else "stopped"}
        last = clock.last_report
        if last is not None:
            scheduler_status.update(
                last_tick=last.now.isoformat(),
                last_scanned=last.scanned,
                last_errors=last.errors,
            )

    is_healthy = db_status == "ok" and scheduler_status["status"] != "stopped"
    return {
        "status": "healthy" if is_healthy else "unhealthy",
        "service": "courier-backend",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "scheduler": scheduler_status,
            "messages": counts,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "courier-backend",
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": "courier-backend",
    }
