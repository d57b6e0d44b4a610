from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from twilio.request_validator import RequestValidator

from sms_inbox.auth import issue_session_token
from sms_inbox.config import Settings
from sms_inbox.db import Volunteer, build_engine, init_db
from sms_inbox.errors import DeliveryFailed
from sms_inbox.language import DETECTION_SYSTEM_PROMPT, TranslationAdapter
from sms_inbox.main import Services, create_app

AUTH_TOKEN = "test-twilio-auth-token"
SESSION_SECRET = "test-session-secret"
WEBHOOK_URL = "http://testserver/sms/inbound"


def _response(content: Any) -> Any:
    return type("Response", (), {"content": content})()


class FakeModel:
    """
    Fake chat model: answers detection prompts with ``language`` and
    translation prompts from ``translations`` (or a tagged echo).
    """

    def __init__(
        self,
        language: str = "en",
        translations: dict[str, str] | None = None,
        fail_detect: bool = False,
        fail_translate: bool = False,
    ) -> None:
        self.language = language
        self.translations = translations or {}
        self.fail_detect = fail_detect
        self.fail_translate = fail_translate
        self.called_messages: list[list[Any]] = []

    def invoke(self, messages: list[Any]) -> Any:
        self.called_messages.append(messages)
        system = str(messages[0].content)
        text = str(messages[1].content)
        if system == DETECTION_SYSTEM_PROMPT:
            if self.fail_detect:
                raise RuntimeError("detector unavailable")
            return _response(self.language)
        if self.fail_translate:
            raise RuntimeError("translator unavailable")
        return _response(self.translations.get(text, f"[translated] {text}"))

    @property
    def translation_calls(self) -> list[list[Any]]:
        return [m for m in self.called_messages if m[0].content != DETECTION_SYSTEM_PROMPT]


class FakeSender:
    """Fails the first ``failures`` sends (all of them if ``failures`` is None)."""

    def __init__(self, failures: int | None = 0) -> None:
        self.failures = failures
        self.calls: list[tuple[str, str]] = []

    def send(self, to: str, body: str) -> str:
        self.calls.append((to, body))
        if self.failures is None or len(self.calls) <= self.failures:
            raise DeliveryFailed(f"carrier error on attempt {len(self.calls)}")
        return f"SM{len(self.calls):032d}"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'inbox.db'}",
        twilio_account_sid="ACtest",
        twilio_auth_token=AUTH_TOKEN,
        twilio_from_number="+15550000000",
        session_secret=SESSION_SECRET,
        delivery_max_attempts=3,
        delivery_backoff_seconds=1.0,
    )


@pytest.fixture
def session_factory(settings: Settings) -> sessionmaker[Session]:
    engine = build_engine(settings.database_url)
    init_db(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def client(
    settings: Settings,
    session_factory: sessionmaker[Session],
    fake_model: FakeModel,
    fake_sender: FakeSender,
    sleeps: list[float],
) -> Generator[TestClient, None, None]:
    services = Services(
        settings=settings,
        translator=TranslationAdapter(fake_model),
        sender=fake_sender,
        session_factory=session_factory,
        sleep=sleeps.append,
    )
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def make_volunteer(db: Session) -> Callable[..., Volunteer]:
    counter = {"n": 0}

    def _make(approved: bool = True, is_admin: bool = False, name: str | None = None) -> Volunteer:
        counter["n"] += 1
        volunteer = Volunteer(
            email=f"volunteer{counter['n']}@example.org",
            name=name or f"Volunteer {counter['n']}",
            approved=approved,
            is_admin=is_admin,
        )
        db.add(volunteer)
        db.commit()
        db.refresh(volunteer)
        return volunteer

    return _make


def auth_headers(volunteer_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(volunteer_id, SESSION_SECRET)}"}


def sign(params: dict[str, str], url: str = WEBHOOK_URL) -> str:
    return RequestValidator(AUTH_TOKEN).compute_signature(url, params)


def post_webhook(client: TestClient, params: dict[str, str], signature: str | None = None) -> Any:
    headers = {"X-Twilio-Signature": signature if signature is not None else sign(params)}
    return client.post("/sms/inbound", data=params, headers=headers)
