import os
from typing import Generator, List, Tuple

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")

from roombook.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from roombook.cache import room_cache  # noqa: E402
from roombook.database import Base, SessionLocal, engine  # noqa: E402
from roombook.notifications import AccountNotifier, BookingNotifier, get_notifier  # noqa: E402
from services.announcements.app import app as announcements_app  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.feedback.app import app as feedback_app  # noqa: E402
from services.rooms.app import app as rooms_app  # noqa: E402
from services.users.app import app as users_app  # noqa: E402


class RecordingNotifier(BookingNotifier, AccountNotifier):
    def __init__(self) -> None:
        self.sent: List[int] = []
        self.tokens: List[Tuple[str, str, str]] = []

    def send_booking_confirmation(self, user, room, booking) -> None:
        self.sent.append(booking.id)

    def send_account_token(self, user, purpose, token, expires_at) -> None:
        self.tokens.append((purpose, user.email, token))

    def last_token(self, purpose: str) -> str:
        return [token for kind, _, token in self.tokens if kind == purpose][-1]


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    room_cache.clear()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def users_client(notifier: RecordingNotifier) -> Generator[TestClient, None, None]:
    users_app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(users_app) as client:
        yield client
    users_app.dependency_overrides.clear()


@pytest.fixture()
def rooms_client() -> Generator[TestClient, None, None]:
    with TestClient(rooms_app) as client:
        yield client


@pytest.fixture()
def bookings_client(notifier: RecordingNotifier) -> Generator[TestClient, None, None]:
    bookings_app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(bookings_app) as client:
        yield client
    bookings_app.dependency_overrides.clear()


@pytest.fixture()
def feedback_client() -> Generator[TestClient, None, None]:
    with TestClient(feedback_app) as client:
        yield client


@pytest.fixture()
def announcements_client() -> Generator[TestClient, None, None]:
    with TestClient(announcements_app) as client:
        yield client
