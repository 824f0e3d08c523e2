import os
import tempfile
import time

import jwt
import pytest

_tmpdir = tempfile.mkdtemp(prefix="strun-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-0123456789abcdef0123"
os.environ["PINATA_JWT"] = "test-pinata-jwt"
os.environ["UPLOAD_FOLDER"] = os.path.join(_tmpdir, "uploads")
os.environ["LOG_LEVEL"] = "INFO"

from app import app as flask_app, db  # noqa: E402
from models import User, PartnerLocation, Task  # noqa: E402
import claims  # noqa: E402

JWT_SECRET = os.environ["SUPABASE_JWT_SECRET"]
T0 = 1_700_000_000


@pytest.fixture
def app():
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(user_id="user-1", secret=JWT_SECRET, **claims_):
    payload = {
        "sub": user_id,
        "aud": "authenticated",
        "email": f"{user_id}@strun.test",
        "exp": int(time.time()) + 3600,
        **claims_,
    }
    return {"Authorization": f"Bearer {jwt.encode(payload, secret, algorithm='HS256')}"}


@pytest.fixture
def auth_headers():
    return bearer()


@pytest.fixture
def user(app):
    runner = User(id="user-1", username="runner_test", email="user-1@strun.test")
    db.session.add(runner)
    db.session.commit()
    return runner


@pytest.fixture
def location(app):
    partner = PartnerLocation(name="Cafe", lat=40.0, lon=-73.0, radius_m=50, qr_secret="s3cret")
    db.session.add(partner)
    db.session.commit()
    return partner


@pytest.fixture
def task(location):
    qr_task = Task(title="Cafe check-in", type="qr", xp_reward=25, partner_location=location)
    db.session.add(qr_task)
    db.session.commit()
    return qr_task


@pytest.fixture
def pinned(monkeypatch):
    """Replace Pinata with an in-memory recorder"""
    proofs = []

    def fake_pin(content, name=None):
        proofs.append(content)
        return f"ipfs://QmProof{len(proofs)}"

    monkeypatch.setattr(claims, "pin_json_to_ipfs", fake_pin)
    return proofs
