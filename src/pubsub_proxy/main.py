import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import uvicorn
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError

from .config import Settings, load_settings
from .errors import (
    AuthFailure,
    MissingMessage,
    MissingTopic,
    PublishError,
    TopicNotFound,
    Unexpected,
    register_error_handlers,
)
from .middleware import install_middleware
from .services import credentials as auth
from .services import pubsub


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


class PublishRequest(BaseModel):
    topic: Optional[str] = None
    message: Any = None
    credentials: Optional[Union[Dict[str, Any], str]] = None
    projectId: Optional[str] = None
    scope: Optional[Union[List[str], str]] = None


class PublishResponse(BaseModel):
    success: bool
    messageId: str
    timestamp: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _validate(body: PublishRequest) -> None:
    if _is_blank(body.topic):
        raise MissingTopic()
    if body.message is None:
        raise MissingMessage()


def parse_publish_request(raw: Any) -> PublishRequest:
    """Check topic and message presence on the raw JSON, then type-check the rest."""
    data = raw if isinstance(raw, dict) else {}
    if _is_blank(data.get("topic")):
        raise MissingTopic()
    if data.get("message") is None:
        raise MissingMessage()
    try:
        return PublishRequest.model_validate(data)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


def handle_publish(body: PublishRequest, settings: Settings) -> PublishResponse:
    _validate(body)

    ctx = auth.resolve_auth_context(body.credentials, body.scope)
    project_id = body.projectId or settings.project_id
    if not project_id and isinstance(ctx, auth.ServiceAccount):
        project_id = ctx.info.get("project_id")
    if not project_id:
        raise Unexpected(message="PROJECT_ID not configured", details="Provide projectId or set PROJECT_ID")

    logger.info("Publishing to topic %s in project %s using %s credentials", body.topic, project_id, auth.describe(ctx))

    try:
        with pubsub.get_topic(body.topic, project_id, ctx) as topic:
            try:
                exists = topic.exists()
            except Exception as exc:
                if pubsub.is_auth_error(exc):
                    raise AuthFailure(
                        message=(
                            "Authentication failed or insufficient permissions to access the topic. "
                            "Check that the credentials are valid and grant the required scope."
                        ),
                        details=str(exc),
                        requires_scopes=list(ctx.scopes),
                    ) from exc
                raise
            if not exists:
                raise TopicNotFound(body.topic)

            data = json.dumps(body.message).encode("utf-8")
            attributes = {
                "source": settings.message_source,
                "publishedAt": _now_iso(),
            }
            message_id = topic.publish(data, attributes)
    except PublishError:
        raise
    except Exception as exc:
        logger.error("Error publishing message to %s: %s", body.topic, exc, exc_info=True)
        if pubsub.is_auth_error(exc):
            raise AuthFailure(
                message=str(exc),
                details=type(exc).__name__,
                requires_scopes=list(ctx.scopes),
            ) from exc
        raise Unexpected.from_exception(exc) from exc

    logger.info("Published message %s to %s", message_id, body.topic)
    return PublishResponse(success=True, messageId=message_id, timestamp=_now_iso())


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.getLogger().setLevel(settings.log_level)

    app = FastAPI(title="Pub/Sub Proxy API", version=VERSION)
    app.state.settings = settings
    app.state.rate_limiter = install_middleware(app, settings)
    register_error_handlers(app)

    @app.get("/")
    def root():
        return {"message": "Pub/Sub Proxy API", "version": VERSION, "status": "running"}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.post("/api/publish", response_model=PublishResponse)
    def publish(request: Request, body: Any = Body(default=None)):
        return handle_publish(parse_publish_request(body), request.app.state.settings)

    return app


app = create_app()


def run() -> None:
    settings = app.state.settings
    logger.info(f"Pub/Sub Proxy API running on port {settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
