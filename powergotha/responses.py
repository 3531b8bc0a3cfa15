"""Uniform response envelope and the app-wide error handlers."""

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from .errors import AppError

logger = structlog.get_logger()


def success(data=None, message: str = "Success.", status_code: int = 200) -> JSONResponse:
    body = {"success": True, "message": message, "data": [] if data is None else data}
    return JSONResponse(jsonable_encoder(body), status_code=status_code)


def failure(message: str, status_code: int, errors=None) -> JSONResponse:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(body, status_code=status_code)


def _field_message(err: dict) -> str:
    field = str(err["loc"][-1]) if err.get("loc") else "body"
    if err.get("type") == "missing":
        return f"The {field.replace('_', ' ')} field is required."
    msg = err.get("msg", "Invalid value.")
    return msg.removeprefix("Value error, ")


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    def app_error(request: Request, exc: AppError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log("request_failed", path=request.url.path, method=request.method, status=exc.status_code, error=exc.message)
        return failure(exc.message, exc.status_code, exc.errors)

    @app.exception_handler(RequestValidationError)
    def validation_error(request: Request, exc: RequestValidationError):
        return failure("The given data was invalid.", 422, [_field_message(e) for e in exc.errors()])

    @app.exception_handler(StarletteHTTPException)
    def http_error(request: Request, exc: StarletteHTTPException):
        message = "API endpoint not found" if exc.status_code == 404 else str(exc.detail)
        return failure(message, exc.status_code, [message])

    @app.exception_handler(Exception)
    def unhandled(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, method=request.method)
        return failure("Internal server error", 500, ["An unexpected error occurred"])
