"""Main application entry point."""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

from app.config import settings
from app.database import init_db
from app.exceptions import AppError, format_error_for_api
from app.scheduler import start_scheduler, stop_scheduler
from app.services.email_dispatcher import request_email_template
from app.services.template_renderer import (
    TemplateRenderer,
    EmailTemplate,
    REQUIRED_SUBJECT_PLACEHOLDERS,
    REQUIRED_BODY_PLACEHOLDERS
)
from app.api.requests import router as requests_router
from app.api.replies import router as replies_router
from app.api.users import router as users_router


logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Time-Off Request Correspondence Service",
    description="Time-off requests, scheduling emails and reply reconciliation",
    version="1.0.0",
    debug=settings.debug
)

app.include_router(requests_router, prefix=settings.api_prefix)
app.include_router(replies_router, prefix=settings.api_prefix)
app.include_router(users_router, prefix=settings.api_prefix)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Translate domain errors into the API error envelope."""
    logger.warning(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=format_error_for_api(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies in the same envelope as domain errors."""
    errors = [
        {"field": str(error["loc"][-1]) if error.get("loc") else "unknown", "msg": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed.",
                "details": {"errors": errors}
            }
        }
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred.",
                "details": {}
            }
        }
    )


def check_email_templates() -> bool:
    """Log a warning for every required placeholder missing from the configured templates."""
    renderer = TemplateRenderer()
    template = request_email_template()
    ok = True
    for part, required in (
        (EmailTemplate(template.subject, ""), REQUIRED_SUBJECT_PLACEHOLDERS),
        (EmailTemplate("", template.body), REQUIRED_BODY_PLACEHOLDERS),
    ):
        if not renderer.validate(part, required):
            ok = False
            logger.warning(
                f"Email template is missing placeholders: {sorted(renderer.missing_placeholders(part, required))}"
            )
    return ok


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    logger.info("Application starting up...")
    init_db()
    check_email_templates()
    start_scheduler()
    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on application shutdown."""
    stop_scheduler()


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Time-Off Request Correspondence Service"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
