"""Error taxonomy for the publish relay and the FastAPI handlers that render it."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse


logger = logging.getLogger(__name__)


class PublishError(Exception):
    status_code = 500
    error = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        super().__init__(message or self.error)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.message is not None:
            body["message"] = self.message
        if self.details is not None:
            body["details"] = self.details
        return body


class MissingTopic(PublishError):
    status_code = 400
    error = "Topic name is required"


class MissingMessage(PublishError):
    status_code = 400
    error = "Message is required"


class AuthFailure(PublishError):
    status_code = 403
    error = "Permission denied. Check service account permissions."

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[str] = None,
        requires_scopes: Optional[List[str]] = None,
    ):
        super().__init__(message, details)
        self.requires_scopes = requires_scopes

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.requires_scopes:
            body["requiresScopes"] = list(self.requires_scopes)
        return body


class TopicNotFound(PublishError):
    status_code = 404

    def __init__(self, topic: str):
        self.topic = topic
        self.error = f"Topic '{topic}' does not exist"
        super().__init__(self.error)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error}


class Unexpected(PublishError):
    status_code = 500
    error = "Failed to publish message"

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Unexpected":
        # Stack traces stay in the server log; callers only see type and message.
        return cls(message=str(exc), details=type(exc).__name__)


async def publish_error_handler(request: Request, exc: PublishError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.to_dict())
    else:
        logger.info(
            "%s %s rejected with %d: %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.to_dict().get("error"),
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
        for err in exc.errors()
    ]
    logger.info("Invalid request body on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": details})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PublishError, publish_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
