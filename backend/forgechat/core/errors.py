"""Response envelopes and the numeric error-code taxonomy.

Every JSON response uses the same envelope::

    {"success": false, "errorCode": 40413, "message": "...", "data": null}

``errorCode`` embeds the HTTP status in its first three digits.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ErrorCode:
    # 400xx invalid parameters
    INVALID_PARAMS = 40000
    CONVERSATION_PARAMS = 40011
    MESSAGE_PARAMS = 40012
    CONVERSATION_UPDATE_PARAMS = 40013
    BAD_USER_MESSAGE_ID = 40014
    TOOL_PARAMS = 40031
    TOOL_CONFIG = 40032
    TOOL_UPDATE_PARAMS = 40033
    TOOL_UPDATE_CONFIG = 40034
    TOOL_EXECUTE_PARAMS = 40035

    # 401xx authentication
    UNAUTHORIZED = 40100
    INVALID_TOKEN = 40101
    TOKEN_EXPIRED = 40102
    INVALID_CREDENTIALS = 40103

    # 403xx permissions
    FORBIDDEN = 40300
    TOOL_CREATE_FORBIDDEN = 40301
    TOOL_UPDATE_FORBIDDEN = 40302
    TOOL_DELETE_FORBIDDEN = 40303

    # 404xx not found
    RESOURCE_NOT_FOUND = 40400
    USER_NOT_FOUND = 40401
    CONVERSATION_NOT_FOUND = 40411
    MESSAGES_CONVERSATION_NOT_FOUND = 40412
    STREAM_CONVERSATION_NOT_FOUND = 40413
    USER_MESSAGE_NOT_FOUND = 40414
    UPDATE_CONVERSATION_NOT_FOUND = 40415
    MESSAGE_NOT_FOUND = 40416
    REGENERATE_CONVERSATION_NOT_FOUND = 40417
    AI_MESSAGE_NOT_FOUND = 40418
    PARENT_MESSAGE_MISSING = 40419
    TOOL_NOT_FOUND = 40431
    UPDATE_TOOL_NOT_FOUND = 40432
    DELETE_TOOL_NOT_FOUND = 40433
    EXECUTE_TOOL_NOT_FOUND = 40434

    # 409xx conflicts
    RESOURCE_CONFLICT = 40900
    EMAIL_EXISTS = 40902
    TOOL_NAME_EXISTS = 40931

    # 500xx server errors
    INTERNAL_SERVER = 50000
    DATABASE_ERROR = 50001
    EXTERNAL_SERVICE = 50002
    SINK_NOT_FLUSHABLE = 50015
    PLACEHOLDER_CREATE_FAILED = 50018


class AppError(Exception):
    """An error rendered as an envelope with an application error code."""

    def __init__(self, status_code: int, error_code: int, message: str, data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.data = data


def error_body(error_code: int, message: str, data: Any = None) -> dict:
    return {"success": False, "errorCode": error_code, "message": message, "data": data}


def success_body(data: Any = None, message: str | None = None) -> dict:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def _status_to_code(status_code: int) -> int:
    return status_code * 100


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: [%s] %s", request.method, request.url.path, exc.error_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(error_body(exc.error_code, exc.message, exc.data)),
    )


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(_status_to_code(exc.status_code), str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder(
            error_body(ErrorCode.INVALID_PARAMS, "Invalid request parameters", exc.errors())
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
