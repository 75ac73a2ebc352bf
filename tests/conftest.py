import sys
from pathlib import Path
from urllib.parse import parse_qs, urlparse

# ensure project root is importable for tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def isolate_backend(monkeypatch):
    """Give every test its own in-memory identity service and store."""
    import main
    from backend import IdentityService, Store

    monkeypatch.setattr(main, "identity_service", IdentityService())
    monkeypatch.setattr(main, "store", Store())
    monkeypatch.delenv("EMAIL_HOST", raising=False)
    main.LOGIN_ATTEMPTS.clear()
    yield
    main.LOGIN_ATTEMPTS.clear()


@pytest.fixture
def client():
    import main
    return TestClient(main.app)


def confirmation_code(email: str) -> str:
    import main
    message = next(m for m in reversed(main.identity_service.outbox) if m.to == email)
    return parse_qs(urlparse(message.link).query)["code"][0]


def register(client, role, email, name="Test User", password="password123"):
    return client.post("/register", data={
        "name": name,
        "email": email,
        "password": password,
        "confirm_password": password,
        "role": role,
    })


def confirm(client, email):
    return client.get(f"/auth/callback?code={confirmation_code(email)}", follow_redirects=False)


def signed_up(client, role, email, name="Test User"):
    """Register, click the emailed link, and return the callback response."""
    r = register(client, role, email, name=name)
    assert r.status_code == 200
    return confirm(client, email)


SHELTER_DATA = {
    "name": "Happy Paws Shelter",
    "address": "123 Main St",
    "city": "Chicago",
    "state": "IL",
    "phone": "3125550123",
    "email": "contact@happypaws.org",
    "website": "https://www.happypaws.org",
}


def onboard_shelter(client, email, **overrides):
    """A confirmed shelter account with its shelter row saved."""
    signed_up(client, "shelter", email)
    r = client.post("/shelter-setup", data={**SHELTER_DATA, **overrides}, follow_redirects=False)
    assert r.status_code == 303
    return r


def add_pet(client, **fields):
    data = {"name": "Buddy", "species": "Dog", "sex": "male"}
    data.update(fields)
    return client.post("/pet-register", data=data, follow_redirects=False)
