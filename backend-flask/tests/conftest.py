from __future__ import annotations

import json

import pytest

from actions.helpers import new_id
from app import create_app
from auth import hash_password
from config import Config
from db import SessionLocal
from models import Organization, User
from services.ai_interviewer import AIInterviewer
from services.github_analyzer import GitHubAnalyzer
from utils import iso_utc_now


class FakeModelResponse:
    def __init__(self, text):
        self.text = text


class FakeModels:
    """Answers generate_content by matching a marker substring in the prompt."""

    def __init__(self, script):
        self.script = script
        self.prompts = []

    def generate_content(self, model, contents):
        self.prompts.append(contents)
        for marker, payload in self.script.items():
            if marker in contents:
                if isinstance(payload, Exception):
                    raise payload
                return FakeModelResponse(payload if isinstance(payload, str) else json.dumps(payload))
        raise RuntimeError("model unavailable")


class FakeGenAIClient:
    def __init__(self, script=None):
        self.models = FakeModels(script or {})


class FakeHTTPResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeGitHubSession:
    def __init__(self, routes=None):
        self.headers = {}
        self.routes = routes or {}
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        for suffix, (status, payload) in self.routes.items():
            if url.endswith(suffix):
                return FakeHTTPResponse(status, payload)
        return FakeHTTPResponse(404, {"message": "Not Found"})


def github_routes(username="octo", repos=None, profile=None):
    return {
        f"/users/{username}/repos": (200, repos if repos is not None else []),
        f"/users/{username}": (
            200,
            profile or {"login": username, "name": "Octo Cat", "public_repos": len(repos or []), "created_at": "2015-01-01T00:00:00Z"},
        ),
    }


@pytest.fixture
def cfg(tmp_path):
    c = Config()
    c.APP_ENV = "test"
    c.DATABASE_URL = f"sqlite:///{tmp_path / 'test.db'}"
    c.UPLOAD_DIR = str(tmp_path / "uploads")
    c.LOG_LEVEL = "WARNING"
    c.GEMINI_API_KEY = "test-key"
    c.GITHUB_TOKEN = ""
    c.STRIPE_SECRET_KEY = "sk_test_123"
    c.STRIPE_WEBHOOK_SECRET = "whsec_test"
    c.STRIPE_BASIC_PRICE_ID = "price_basic"
    c.STRIPE_PRO_PRICE_ID = "price_pro"
    c.STRIPE_ENTERPRISE_PRICE_ID = "price_enterprise"
    c.RATE_LIMIT_DEFAULT = "100 per minute"
    c.RATE_LIMIT_GLOBAL = "1000 per minute"
    c.RATE_LIMIT_LOGIN = "50 per minute"
    c.SESSION_TTL_MINUTES = 60
    return c


@pytest.fixture
def ai_client():
    # No script: every model call fails and the interviewer falls back.
    return FakeGenAIClient()


@pytest.fixture
def github_session():
    return FakeGitHubSession(github_routes())


@pytest.fixture
def app(cfg, ai_client, github_session):
    app = create_app(cfg)
    app.config["TESTING"] = True
    app.config["AI_INTERVIEWER_FACTORY"] = lambda c: AIInterviewer(model=c.GEMINI_MODEL, client=ai_client, retries=0)
    app.config["GITHUB_ANALYZER_FACTORY"] = lambda c: GitHubAnalyzer(session=github_session)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    session = SessionLocal()
    yield session
    session.close()


class Api:
    def __init__(self, client):
        self.client = client

    def call(self, action, data=None, token=None):
        resp = self.client.post("/api", json={"action": action, "token": token, "data": data or {}})
        return resp.status_code, resp.get_json()

    def ok(self, action, data=None, token=None):
        status, body = self.call(action, data, token)
        assert status == 200, body
        assert body["ok"] is True
        return body["data"]

    def register_and_login(self, email="admin@acme.io", name="Ada Admin", company="Acme", password="s3cret-pass"):
        reg = self.ok("REGISTER", {"name": name, "email": email, "password": password, "company": company})
        login = self.ok("LOGIN", {"email": email, "password": password})
        return {"token": login["sessionToken"], "user": reg["user"], "organizationId": reg["organization"]["id"]}


@pytest.fixture
def api(client):
    return Api(client)


@pytest.fixture
def admin(api):
    return api.register_and_login()


def set_plan(db, organization_id, plan):
    org = db.get(Organization, organization_id)
    org.plan = plan
    db.commit()


def candidate_payload(**overrides):
    data = {
        "name": "Grace Hopper",
        "email": "grace@example.com",
        "position": "Backend Engineer",
        "experience": "3-5 years",
        "skills": ["Python", "SQL"],
    }
    data.update(overrides)
    return data


def add_user(db, organization_id, role, email, password="pass-word-1", name="Team Member"):
    now = iso_utc_now()
    user = User(
        id=new_id(),
        organizationId=organization_id,
        name=name,
        email=email,
        passwordHash=hash_password(password),
        role=role,
        isActive=True,
        createdAt=now,
        updatedAt=now,
    )
    db.add(user)
    db.commit()
    return user


def login_as(api, email, password="pass-word-1"):
    return api.ok("LOGIN", {"email": email, "password": password})["sessionToken"]
