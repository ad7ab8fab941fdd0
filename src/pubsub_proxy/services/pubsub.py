import logging
from typing import Any, Dict, Optional, Tuple

from google.api_core import exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import pubsub_v1

from .credentials import AuthContext, DefaultIdentity, build_credentials


logger = logging.getLogger(__name__)

# gRPC status codes
PERMISSION_DENIED = 7
UNAUTHENTICATED = 16

_publisher = None


def _get_publisher() -> pubsub_v1.PublisherClient:
    global _publisher
    if _publisher is None:
        _publisher = pubsub_v1.PublisherClient()
    return _publisher


def _publisher_for(auth: AuthContext) -> Tuple[pubsub_v1.PublisherClient, bool]:
    """Return (client, owned). Owned clients belong to a single request."""
    if isinstance(auth, DefaultIdentity):
        return _get_publisher(), False
    # Caller credentials get their own client; TopicHandle.close releases it.
    return pubsub_v1.PublisherClient(credentials=build_credentials(auth)), True


class TopicHandle:
    def __init__(
        self,
        publisher: pubsub_v1.PublisherClient,
        project_id: str,
        name: str,
        owns_publisher: bool = False,
    ):
        self.publisher = publisher
        self.name = name
        self.path = publisher.topic_path(project_id, name)
        self.owns_publisher = owns_publisher

    def close(self) -> None:
        """Stop a per-request client and close its channel; the shared client is left open."""
        if not self.owns_publisher:
            return
        self.owns_publisher = False

        # Flush batching threads, then release the gRPC channel.
        try:
            self.publisher.stop()
        except Exception as exc:
            logger.warning("Failed to stop publisher for %s: %s", self.name, exc)

        transport_close = getattr(getattr(self.publisher, "transport", None), "close", None)
        if callable(transport_close):
            try:
                transport_close()
            except Exception as exc:
                logger.warning("Failed to close publisher transport for %s: %s", self.name, exc)

    def __enter__(self) -> "TopicHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def exists(self) -> bool:
        try:
            self.publisher.get_topic(request={"topic": self.path})
        except exceptions.NotFound:
            return False
        return True

    def publish(self, data: bytes, attributes: Optional[Dict[str, str]] = None) -> str:
        """Publish to the topic and block until the bus assigns a message id."""
        future = self.publisher.publish(self.path, data, **(attributes or {}))
        return future.result()


def get_topic(name: str, project_id: str, auth: AuthContext) -> TopicHandle:
    publisher, owned = _publisher_for(auth)
    return TopicHandle(publisher, project_id, name, owns_publisher=owned)


def _status_code(exc: BaseException) -> Optional[int]:
    code: Any = getattr(exc, "grpc_status_code", None)
    if code is None:
        code = getattr(exc, "code", None)
    if code is None:
        return None
    value = getattr(code, "value", code)
    if isinstance(value, tuple):
        # grpc.StatusCode values are (int, name) pairs
        value = value[0]
    return value if isinstance(value, int) else None


def is_auth_error(exc: BaseException) -> bool:
    if isinstance(exc, (exceptions.PermissionDenied, exceptions.Unauthenticated)):
        return True
    if isinstance(exc, (auth_exceptions.RefreshError, auth_exceptions.DefaultCredentialsError)):
        return True
    return _status_code(exc) in (PERMISSION_DENIED, UNAUTHENTICATED)
