from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import pytest

from database import Base
from schemas import SignUpIn
from services import UserService, ensure_default_categories
from storage import MemoryStorage, SqlStorage


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        yield MemoryStorage()
        return
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield SqlStorage(session)
    engine.dispose()


def make_user(store, email: str = "ana@example.com", name: str = "Ana Lima"):
    return UserService(store).sign_up(
        SignUpIn(email=email, password="secret1", full_name=name)
    )


@pytest.fixture
def user(store):
    ensure_default_categories(store)
    return make_user(store)


@pytest.fixture
def categories(store, user):
    return {c.name: c for c in store.list_categories(user.id)}
