from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from heapwarden import __version__
from heapwarden.core.errors import MonitorError
from heapwarden.core.services import MonitorServices
from heapwarden.web.models import ForceGcRequest, HeapCeilingRequest, LargeObjectRequest


def _iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _unavailable(services: MonitorServices, *names: str) -> Optional[JSONResponse]:
    missing = [n for n in names if getattr(services, n) is None]
    if not missing:
        return None
    detail = {n: services.init_errors.get(n, {}).get("user_message", "not initialized") for n in missing}
    return JSONResponse(status_code=500, content={"success": False, "error": "Service initialization failed: " + ", ".join(missing), "details": detail})


def create_app(
    services: MonitorServices,
    *,
    logger=None,
    prefix: str = "/api/memory-optimization",
    post_optimization_settle_seconds: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> FastAPI:
    app = FastAPI(title="heapwarden", version=__version__)
    router = APIRouter()
    reporter = services.error_reporter

    @app.exception_handler(MonitorError)
    async def monitor_error_handler(request: Request, exc: MonitorError):
        if reporter is not None:
            reporter.write_error(exc, trace_id="web", subsystem="web")
        code = 400 if exc.code == "parameter_rejected" else 500
        return JSONResponse(status_code=code, content={"success": False, "error": exc.user_message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request.", "code": "validation_error"})

    def _comprehensive_report() -> Dict[str, Any]:
        assert services.leak_detector is not None and services.heap_tuner is not None
        leak_report = services.leak_detector.get_leak_report()
        opt_report = services.heap_tuner.get_optimization_report()
        total_leaks = int(leak_report["leaks"]["total"])
        critical = int(opt_report["summary"]["critical_advice"])
        return {
            "timestamp": _iso_now(),
            "memoryLeaks": leak_report,
            "runtimeOptimization": opt_report,
            "summary": {
                "totalLeaks": total_leaks,
                "criticalAdvice": critical,
                "highPriorityAdvice": int(opt_report["summary"]["high_priority_advice"]),
                "overallHealth": "HEALTHY" if total_leaks == 0 and critical == 0 else "NEEDS_ATTENTION",
            },
        }

    @router.get("/comprehensive-report")
    def comprehensive_report():
        err = _unavailable(services, "leak_detector", "heap_tuner")
        if err is not None:
            return err
        return {"success": True, "data": _comprehensive_report()}

    @router.post("/comprehensive-optimization")
    def comprehensive_optimization():
        err = _unavailable(services, "leak_detector", "heap_tuner")
        if err is not None:
            return err
        assert services.leak_detector is not None and services.heap_tuner is not None
        t0 = time.monotonic()
        cleanup = services.leak_detector.auto_cleanup_leaks()
        run = services.heap_tuner.run_optimization_cycle()
        settle = max(0.0, float(post_optimization_settle_seconds))
        if settle > 0:
            sleep(settle)
        final_leaks = services.leak_detector.get_leak_report()
        final_opt = services.heap_tuner.get_optimization_report()
        if logger is not None:
            logger.info(f"Comprehensive optimization: cleaned={cleanup.total} cycle={run.status}")
        return {
            "success": True,
            "duration": int(round((time.monotonic() - t0) * 1000)),
            "leakCleanup": cleanup.public_dict(),
            "runtimeOptimization": run.public_dict(),
            "finalState": {"leaks": final_leaks["leaks"], "heap": final_opt["heap"]},
            "summary": {
                "leaksCleaned": cleanup.total,
                "runtimeOptimized": bool(run.success),
                "overallImprovement": cleanup.total > 0 or bool(run.success),
            },
        }

    @router.get("/health")
    def health():
        return {
            "success": True,
            "data": {
                "status": "healthy" if services.healthy else "unhealthy",
                "timestamp": _iso_now(),
                "uptime": round(services.uptime_seconds(), 3),
                "services": {"leakDetectorUp": services.leak_detector_up, "heapTunerUp": services.heap_tuner_up},
                "initErrors": dict(services.init_errors),
            },
        }

    @router.get("/leak-report")
    def leak_report():
        err = _unavailable(services, "leak_detector")
        if err is not None:
            return err
        return {"success": True, "data": services.leak_detector.get_leak_report()}

    @router.post("/large-objects")
    def register_large_object(req: LargeObjectRequest):
        err = _unavailable(services, "leak_detector")
        if err is not None:
            return err
        entry = services.leak_detector.register_large_object(req.id, req.size_bytes, req.type_tag, req.metadata)
        return {"success": True, "data": entry.model_dump()}

    @router.delete("/large-objects/{object_id}")
    def release_large_object(object_id: str):
        err = _unavailable(services, "leak_detector")
        if err is not None:
            return err
        return {"success": True, "data": {"released": services.leak_detector.unregister_large_object(object_id)}}

    @router.get("/optimization-report")
    def optimization_report():
        err = _unavailable(services, "heap_tuner")
        if err is not None:
            return err
        return {"success": True, "data": services.heap_tuner.get_optimization_report()}

    @router.get("/heap-snapshot")
    def heap_snapshot():
        err = _unavailable(services, "heap_tuner")
        if err is not None:
            return err
        return {"success": True, "data": services.heap_tuner.get_heap_snapshot().public_dict()}

    @router.post("/heap-ceiling")
    def heap_ceiling(req: HeapCeilingRequest):
        err = _unavailable(services, "heap_tuner")
        if err is not None:
            return err
        ok = services.heap_tuner.adjust_heap_ceiling(req.limit_mb)
        return {"success": bool(ok), "data": {"current_ceiling_mb": services.heap_tuner.current_ceiling_mb}}

    @router.post("/reset")
    def reset():
        err = _unavailable(services, "heap_tuner")
        if err is not None:
            return err
        complete = services.heap_tuner.reset_to_baseline()
        return {"success": True, "data": {"complete": bool(complete), "applied_parameters": services.heap_tuner.applied_parameters}}

    @router.post("/force-gc")
    def force_gc(req: Optional[ForceGcRequest] = None):
        err = _unavailable(services, "heap_tuner")
        if err is not None:
            return err
        generation = req.generation if req is not None else 2
        return {"success": True, "data": services.heap_tuner.force_collection(generation)}

    @router.get("/errors")
    def recent_errors(n: int = 20):
        entries = reporter.tail(max(1, min(200, int(n)))) if reporter is not None else []
        return {"success": True, "data": entries}

    app.include_router(router, prefix=prefix.rstrip("/"))
    return app
