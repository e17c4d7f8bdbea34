import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from proxy_pipeline.common.config import Settings, load_settings
from proxy_pipeline.common.errors import ComputeError, JobNotFound, ProxyNotFound, ValidationError
from proxy_pipeline.common.models import JobStatus
from proxy_pipeline.common.schemas import JobView
from proxy_pipeline.services import Services, build_services

from .auth import bearer_token, is_authorized, require_api_secret

logger = logging.getLogger(__name__)

PROXY_CACHE_CONTROL = "public, max-age=31536000"


class TranscodeReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_id: Optional[str] = Field(None, alias="fileId")
    source_url: Optional[str] = Field(None, alias="sourceUrl")
    qualities: Optional[List[Any]] = None
    webhook_url: Optional[str] = Field(None, alias="webhookUrl")


class WebhookReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId", min_length=1)
    status: str
    qualities: Optional[List[str]] = None
    error: Optional[str] = None


def _error(status_code: int, error: str, message: Optional[str] = None, **extra) -> JSONResponse:
    body = {"error": error}
    if message is not None:
        body["message"] = message
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    def on_validation(request: Request, exc: ValidationError):
        extra = {"validQualities": exc.valid_qualities} if exc.valid_qualities else {}
        return _error(400, exc.error, exc.message, **extra)

    @app.exception_handler(RequestValidationError)
    def on_bad_request(request: Request, exc: RequestValidationError):
        problems = [
            f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body')}: {e.get('msg')}" for e in exc.errors()
        ]
        return _error(400, "Invalid request", "; ".join(problems) or "Malformed request body")

    @app.exception_handler(JobNotFound)
    def on_job_not_found(request: Request, exc: JobNotFound):
        return _error(404, "Job not found", str(exc))

    @app.exception_handler(ProxyNotFound)
    def on_proxy_not_found(request: Request, exc: ProxyNotFound):
        error = "File not found" if exc.reason == ProxyNotFound.JOB_NOT_FOUND else "Proxy not found"
        return _error(404, error, str(exc), reason=exc.reason)

    @app.exception_handler(StarletteHTTPException)
    def on_http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    def on_unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error", str(exc))


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    if services is None:
        settings = settings or load_settings()
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        services = build_services(settings)
    settings = services.settings

    app = FastAPI(title="Tiered Proxy Transcode API", version=settings.version)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services
    _install_error_handlers(app)

    logger.info(
        "Service configured: has_api_secret=%s has_do_token=%s has_ssh_keys=%s api_base_url=%s",
        bool(settings.api_secret), bool(settings.do_api_token), bool(settings.do_ssh_key_ids), settings.api_base_url,
    )

    @app.post("/transcode", status_code=202, dependencies=[Depends(require_api_secret)])
    def transcode(req: TranscodeReq):
        job = services.manager.create_job(req.file_id, req.source_url, req.qualities, req.webhook_url)
        return {
            "success": True,
            "jobId": job.job_id,
            "status": job.status.value,
            "message": f"Provisioning failed: {job.error}" if job.status == JobStatus.failed else "Transcoding job started",
        }

    @app.get("/status/{job_id}")
    def status(job_id: str):
        job = services.manager.get_status(job_id)
        return JobView.of(job).model_dump(by_alias=True, mode="json")

    @app.get("/proxy/{file_id}/{quality}")
    def proxy(file_id: str, quality: str):
        if quality.endswith(".mp4"):
            quality = quality[: -len(".mp4")]
        resolved = services.resolver.resolve(file_id, quality)
        return StreamingResponse(
            resolved.chunks(),
            media_type="video/mp4",
            headers={
                "Content-Length": str(resolved.size_bytes),
                "Cache-Control": PROXY_CACHE_CONTROL,
                "X-Proxy-Quality": resolved.actual_quality,
                "X-Requested-Quality": resolved.requested_quality,
            },
        )

    @app.post("/webhook", dependencies=[Depends(require_api_secret)])
    def webhook(req: WebhookReq):
        job = services.manager.handle_webhook(req.job_id, req.status, req.qualities, req.error)
        return {"success": True, "message": "Webhook processed", "jobId": job.job_id, "status": job.status.value}

    @app.post("/lifecycle", dependencies=[Depends(require_api_secret)])
    def lifecycle():
        stats = services.sweeper.run()
        return {"success": True, **stats.model_dump(by_alias=True)}

    @app.get("/health")
    def health(request: Request):
        privileged = False
        if bearer_token(request) is not None:
            if not is_authorized(request):
                return _error(401, "Unauthorized")
            privileged = True
        return _health(services, privileged)

    return app


def _check_dependency(check) -> dict:
    try:
        check()
        return {"status": "healthy", "error": None}
    except ComputeError as e:
        if str(e) == "not configured":
            return {"status": "not_configured", "error": None}
        return {"status": "error", "error": str(e)}
    except Exception as e:
        return {"status": "error", "error": str(e)}


def _health(services: Services, privileged: bool) -> dict:
    settings = services.settings
    health = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.version,
        "services": {
            "objectStore": {"status": "unknown", "error": None},
            "cache": {"status": "unknown", "error": None},
            "database": {"status": "unknown", "error": None},
            "compute": {"status": "unknown", "error": None},
        },
        "config": {
            "hasComputeToken": bool(settings.do_api_token),
            "hasSSHKeys": bool(settings.do_ssh_key_ids),
            "hasAPISecret": bool(settings.api_secret),
            "apiBaseUrl": settings.api_base_url or "not set",
        },
    }
    if not privileged:
        return health

    checks = health["services"]
    checks["objectStore"] = _check_dependency(services.objects.check)
    checks["cache"] = _check_dependency(services.cache.ping)
    checks["database"] = _check_dependency(services.store.check)
    checks["compute"] = _check_dependency(services.provisioner.check)

    statuses = [s["status"] for s in checks.values()]
    if "error" in statuses:
        health["status"] = "unhealthy"
    elif "not_configured" in statuses:
        health["status"] = "degraded"
    return health
