"""Shared fixtures: a throwaway SQLite database and an inline job queue."""

import importlib
import os
import tempfile
import uuid

os.environ["DATABASE_URL"] = f"sqlite:///{tempfile.gettempdir()}/copyhub-tests-{os.getpid()}.db"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from copyhub import queue as job_queue  # noqa: E402
from copyhub.db import Base, engine, SessionLocal  # noqa: E402
from copyhub.models import User, TradingAccount, CopyLink, AccountRole, AccountStatus, utcnow  # noqa: E402


class InlineJob:
    def __init__(self, func_path, args, kwargs):
        self.id = str(uuid.uuid4())
        self.func_path = func_path
        self.args = args
        self.kwargs = kwargs
        self.result = None


class InlineQueue:
    """Runs enqueued jobs immediately, in-process, like a worker would."""

    def __init__(self):
        self.jobs: list[InlineJob] = []
        self.fail_enqueue = False

    def enqueue(self, func_path, *args, **kwargs):
        if self.fail_enqueue:
            raise ConnectionError("redis unavailable")
        kwargs.pop("retry", None)
        job = InlineJob(func_path, args, kwargs)
        self.jobs.append(job)
        module, _, name = func_path.rpartition(".")
        job.result = getattr(importlib.import_module(module), name)(*args, **kwargs)
        return job


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def jobs(monkeypatch):
    q = InlineQueue()
    monkeypatch.setattr(job_queue, "get_queue", lambda: q)
    return q


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    from copyhub.main import app
    return TestClient(app)


@pytest.fixture
def make_user(db):
    def _make(username="trader", features=None, is_active=True):
        user = User(username=username, features=features or [], is_active=is_active)
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def make_account(db, make_user):
    owners = {}

    def _make(role=AccountRole.SLAVE, login="", balance=10000.0, status=AccountStatus.ACTIVE,
              username="trader", rules_override=None, heartbeat=True):
        if username not in owners:
            owners[username] = db.query(User).filter_by(username=username).first() or make_user(username)
        account = TradingAccount(
            user_id=owners[username].id, name=f"{role}-{login or uuid.uuid4().hex[:6]}",
            login_id=login or str(uuid.uuid4().int % 10**7), role=role, ea_token=str(uuid.uuid4()),
            status=status, balance=balance, equity=balance, rules_override=rules_override or {},
            last_heartbeat=utcnow() if heartbeat else None,
        )
        db.add(account)
        db.commit()
        return account
    return _make


@pytest.fixture
def make_link(db):
    def _make(master, slave, **kwargs):
        link = CopyLink(master_account_id=master.id, slave_account_id=slave.id, **kwargs)
        db.add(link)
        db.commit()
        return link
    return _make


def ea_headers(account) -> dict:
    return {"X-EA-Token": account.ea_token}


def web_headers(username="admin", groups="admin") -> dict:
    return {"X-Auth-Request-Preferred-Username": username, "X-Auth-Request-Groups": groups}
