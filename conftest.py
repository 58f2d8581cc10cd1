import os

# must be set before config.py is imported by the app modules
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import auth_utils
import main
import models
from database import Base, get_db, make_engine


@pytest.fixture
def engine(tmp_path):
    """Each test gets its own SQLite file, with foreign keys enforced."""
    eng = make_engine(f"sqlite:///{tmp_path / 'test_library.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[get_db] = override_get_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email, role=models.UserRole.PATRON, password="secret123", name=None):
        user = models.User(
            email=email,
            hashed_password=auth_utils.get_password_hash(password),
            name=name or email.split("@")[0].title(),
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_book(db):
    counter = {"n": 0}

    def _make(total_copies=1, title=None, category="Programming"):
        counter["n"] += 1
        n = counter["n"]
        book = models.Book(
            title=title or f"Book {n}",
            author=f"Author {n}",
            isbn=f"978-000000{n:04d}",
            category=category,
            total_copies=total_copies,
            available_copies=total_copies,
        )
        db.add(book)
        db.commit()
        db.refresh(book)
        return book
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin@library.com", models.UserRole.ADMIN)


@pytest.fixture
def librarian(make_user):
    return make_user("librarian@library.com", models.UserRole.LIBRARIAN)


@pytest.fixture
def patron(make_user):
    return make_user("patron@library.com", models.UserRole.PATRON)


@pytest.fixture
def other_patron(make_user):
    return make_user("reader@library.com", models.UserRole.PATRON)


def auth_header(user):
    return {"Authorization": f"Bearer {auth_utils.create_access_token(user)}"}


@pytest.fixture
def headers():
    return auth_header
