"""HTTP surface over AutomationService.

Endpoints:
  POST   /api/login           start the interactive login (202; 409 while a login is running)
  DELETE /api/login           reset the flow and delete the saved session
  GET    /api/login-status    current flow state + last error
  POST   /api/submit-otp      hand the 2FA code to the waiting login
  GET    /api/status          Active / Expired / NotFound for the saved session
  POST   /api/webhook         queue an attachment job (202)
  POST   /api/trigger-test    same as the webhook, for manual runs from the dashboard (202)
  GET    /api/config          tenant configuration (secret masked); POST saves it without logging in
  GET    /api/logs            recent log lines; DELETE clears them
  GET    /api/screenshots/{n} failure screenshot
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field, StrictStr, ValidationError

from .errors import AlreadyRunningError, ConfigIncompleteError, SessionNotFoundError
from .models import AttachmentJob
from .service import AutomationService

logger = logging.getLogger(__name__)


class StartLoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = ""
    targetWebhook: str = ""


class SubmitCodeRequest(BaseModel):
    email: str = Field(min_length=1)
    otp: str = Field(min_length=1)


class SaveConfigRequest(BaseModel):
    email: StrictStr
    password: StrictStr
    targetWebhook: StrictStr


def create_app(service: AutomationService) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await service.aclose()

    app = FastAPI(title="GHL attachment relay", lifespan=lifespan)
    app.state.service = service

    @app.post("/api/login", status_code=202)
    async def start_login(body: StartLoginRequest) -> dict:
        try:
            status = service.start_login(body.email, body.password, body.targetWebhook)
        except AlreadyRunningError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ConfigIncompleteError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "message": f"Login process for {body.email} started. Check /api/login-status for updates.",
            **status,
        }

    @app.delete("/api/login")
    async def reset_login(email: str = Query(..., min_length=1)) -> dict:
        status = service.reset_flow(email)
        return {"message": f"Session for {email} deleted successfully.", **status}

    @app.get("/api/login-status")
    async def login_status(email: str = Query(..., min_length=1)) -> dict:
        return service.get_flow_status(email)

    @app.post("/api/submit-otp")
    async def submit_otp(body: SubmitCodeRequest) -> dict:
        if not service.submit_challenge_code(body.email, body.otp):
            raise HTTPException(status_code=400, detail="Failed to submit OTP. Invalid state.")
        return {"message": "OTP submitted successfully."}

    @app.get("/api/status")
    async def session_status(email: str = Query(..., min_length=1)) -> dict:
        status = await service.get_session_status(email)
        return {"status": status.value}

    @app.post("/api/webhook", status_code=202)
    async def webhook(job: AttachmentJob) -> dict:
        try:
            service.enqueue_attachment_job(job)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ConfigIncompleteError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"message": "Accepted. Process queued."}

    @app.post("/api/trigger-test", status_code=202)
    async def trigger_test(request: Request) -> dict:
        # Bad payloads get a plain 400 here rather than the framework's 422.
        try:
            job = AttachmentJob.model_validate(await request.json())
        except (ValidationError, ValueError):
            raise HTTPException(status_code=400, detail="Invalid payload. Missing required fields.")

        logger.info("Manual test triggered for messageId=%s (tenant=%s)", job.message_id, job.tenant_id)
        try:
            service.enqueue_attachment_job(job)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ConfigIncompleteError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"message": "Accepted. Test process started."}

    @app.get("/api/config")
    async def get_config(email: str = Query(..., min_length=1)) -> dict:
        cfg = service.get_tenant_config(email)
        if cfg is None:
            raise HTTPException(status_code=404, detail="No configuration for this tenant.")
        cfg["lastScreenshot"] = service.last_screenshot(email)
        return cfg

    @app.post("/api/config")
    async def save_config(request: Request) -> dict:
        try:
            body = SaveConfigRequest.model_validate(await request.json())
        except (ValidationError, ValueError):
            raise HTTPException(status_code=400, detail="Invalid configuration format.")
        try:
            service.save_tenant_config(body.email, body.password, body.targetWebhook)
        except ConfigIncompleteError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"message": "Configuration saved successfully."}

    @app.get("/api/logs")
    async def get_logs() -> list[str]:
        return service.recent_logs()

    @app.delete("/api/logs")
    async def clear_logs() -> dict:
        service.clear_logs()
        return {"message": "Logs cleared successfully."}

    @app.get("/api/screenshots/{name}")
    async def screenshot(name: str) -> FileResponse:
        path = service.screenshot_path(name)
        if path is None:
            raise HTTPException(status_code=404, detail="File not found.")
        return FileResponse(path, media_type="image/png")

    return app
