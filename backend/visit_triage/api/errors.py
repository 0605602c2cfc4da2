"""
Visit Triage - API Error Handlers

Every failure leaves the API as {"error": code, "message": ..., "details": ...}.
Request-body validation failures are reported as 400, not FastAPI's 422.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from visit_triage.core.exceptions import PipelineError, ValidationError, VisitTriageError

logger = logging.getLogger(__name__)


def error_body(exc: VisitTriageError) -> dict:
    return {"error": exc.code, "message": exc.message, "details": exc.details}


def generic_failure(exc: Exception, message: str) -> VisitTriageError:
    """
    Replace the message of a server-side failure with a generic one.

    Client errors (4xx) keep their message; everything else keeps only its
    code and status.
    """
    if isinstance(exc, VisitTriageError):
        if exc.status_code < 500:
            return exc
        replacement = VisitTriageError(message)
        replacement.code = exc.code
        replacement.status_code = exc.status_code
        return replacement
    return PipelineError(message)


async def visit_triage_error_handler(request: Request, exc: VisitTriageError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    logger.info("Rejected request to %s: %d validation error(s)", request.url.path, len(errors))
    body = error_body(ValidationError("Missing or invalid fields", details={"errors": errors}))
    return JSONResponse(status_code=400, content=body)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(VisitTriageError, visit_triage_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
