from datetime import datetime, timezone

import pytest

import main
from backend import Identity, Profile
from conftest import SHELTER_DATA, register, confirmation_code, signed_up
from main import LandingState, decide_landing, route_for


def _identity(role=None, confirmed=True):
    return Identity(
        email="someone@example.com",
        password_hash="x",
        confirmed_at=datetime.now(timezone.utc) if confirmed else None,
        metadata={"name": "Someone", "role": role} if role else {},
    )


@pytest.mark.parametrize("role, has_shelter, expected", [
    ("adopter", False, LandingState.ACTIVE_ADOPTER),
    ("foster", False, LandingState.ACTIVE_ADOPTER),
    ("shelter", False, LandingState.AWAITING_SHELTER_ONBOARDING),
    ("shelter", True, LandingState.ACTIVE_SHELTER),
])
def test_decide_landing_by_role(role, has_shelter, expected):
    identity = _identity()
    profile = Profile(id=identity.id, name="Someone", role=role)
    assert decide_landing(identity, profile, has_shelter) is expected


def test_decide_landing_without_identity_or_confirmation():
    assert decide_landing(None, None, False) is LandingState.UNAUTHENTICATED
    assert decide_landing(_identity(confirmed=False), None, False) is LandingState.AWAITING_CONFIRMATION
    assert route_for(LandingState.UNAUTHENTICATED) == "/login"
    assert route_for(LandingState.AWAITING_CONFIRMATION) == "/login"


def test_missing_profile_falls_back_to_signup_role():
    assert decide_landing(_identity(role="shelter"), None, False) is LandingState.AWAITING_SHELTER_ONBOARDING
    assert decide_landing(_identity(), None, False) is LandingState.ACTIVE_ADOPTER


def test_root_redirects_anonymous_visitors_to_login(client):
    r = client.get("/", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/login"


def test_shelter_lands_on_onboarding_then_home_via_callback_and_root(client):
    register(client, "shelter", "paws@example.org")
    code = confirmation_code("paws@example.org")

    via_callback = client.get(f"/auth/callback?code={code}", follow_redirects=False)
    via_root = client.get("/", follow_redirects=False)
    assert via_callback.headers["location"] == "/shelter-setup"
    assert via_root.headers["location"] == "/shelter-setup"

    client.post("/shelter-setup", data=SHELTER_DATA)

    via_callback = client.get("/auth/callback", follow_redirects=False)
    via_root = client.get("/", follow_redirects=False)
    assert via_callback.headers["location"] == "/home"
    assert via_root.headers["location"] == "/home"


@pytest.mark.parametrize("role", ["adopter", "foster"])
def test_adopters_and_fosters_land_on_home(client, role):
    r = signed_up(client, role, f"{role}@example.com")
    assert r.headers["location"] == "/home"
    assert client.get("/", follow_redirects=False).headers["location"] == "/home"


def test_orphaned_identity_routes_by_signup_metadata(client):
    # the profile row is lost; the identity still carries the chosen role
    register(client, "shelter", "orphan@example.org")
    main.store.tables["profiles"].clear()

    r = client.get(f"/auth/callback?code={confirmation_code('orphan@example.org')}", follow_redirects=False)
    assert r.headers["location"] == "/shelter-setup"


def test_resolve_landing_reads_the_store(client):
    signed_up(client, "shelter", "paws@example.org")
    identity = main.identity_service.identities[0]
    ctx = main.AuthContext(
        identity=identity,
        access_token="unused",
        profile=main.store.select_one("profiles", id=identity.id),
    )
    assert main.resolve_landing(ctx) is LandingState.AWAITING_SHELTER_ONBOARDING
    assert main.resolve_landing(None) is LandingState.UNAUTHENTICATED
