from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from pubsub_proxy.config import Settings
from pubsub_proxy.main import create_app
from pubsub_proxy.services import pubsub


class FakeTopic:
    """Stands in for pubsub.TopicHandle; records every call."""

    def __init__(self, bus: "FakeBus", name: str, project_id: str, auth: Any):
        self.bus = bus
        self.name = name
        self.project_id = project_id
        self.auth = auth
        self.closed = False

    def __enter__(self) -> "FakeTopic":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.closed = True

    def exists(self) -> bool:
        self.bus.exists_calls.append(self.name)
        if self.bus.exists_error is not None:
            raise self.bus.exists_error
        return self.name in self.bus.topics

    def publish(self, data: bytes, attributes: Optional[Dict[str, str]] = None) -> str:
        self.bus.published.append({"topic": self.name, "data": data, "attributes": dict(attributes or {})})
        if self.bus.publish_error is not None:
            raise self.bus.publish_error
        return str(next(self.bus.ids))


class FakeBus:
    def __init__(self) -> None:
        self.topics = {"orders"}
        self.exists_error: Optional[BaseException] = None
        self.publish_error: Optional[BaseException] = None
        self.get_topic_calls: List[Dict[str, Any]] = []
        self.handles: List[FakeTopic] = []
        self.exists_calls: List[str] = []
        self.published: List[Dict[str, Any]] = []
        self.ids = itertools.count(1000)

    def get_topic(self, name: str, project_id: str, auth: Any) -> FakeTopic:
        self.get_topic_calls.append({"name": name, "project_id": project_id, "auth": auth})
        handle = FakeTopic(self, name, project_id, auth)
        self.handles.append(handle)
        return handle


@pytest.fixture
def settings() -> Settings:
    return Settings(project_id="test-project", message_source="pubsub-proxy-test")


@pytest.fixture
def bus(monkeypatch) -> FakeBus:
    fake = FakeBus()
    monkeypatch.setattr(pubsub, "get_topic", fake.get_topic)
    return fake


@pytest.fixture
def client(settings, bus) -> TestClient:
    return TestClient(create_app(settings))
