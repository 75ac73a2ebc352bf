from uuid import uuid4

import main
from backend import Pet
from conftest import add_pet, onboard_shelter, signed_up
from main import filter_pets


def _pets():
    shelter_id = uuid4()
    return [
        Pet(shelter_id=shelter_id, name="Rex", species="Dog"),
        Pet(shelter_id=shelter_id, name="Mia", species="Cat"),
    ]


def test_search_matches_name_species_and_breed():
    pets = _pets()
    assert [p.name for p in filter_pets(pets, "re")] == ["Rex"]
    assert [p.name for p in filter_pets(pets, "CAT")] == ["Mia"]

    pets[1].breed = "Siamese"
    assert [p.name for p in filter_pets(pets, "siam")] == ["Mia"]


def test_species_filter_and_all():
    pets = _pets()
    assert [p.name for p in filter_pets(pets, "", "Cat")] == ["Mia"]
    assert [p.name for p in filter_pets(pets, "", "All")] == ["Rex", "Mia"]
    assert [p.name for p in filter_pets(pets, "", "")] == ["Rex", "Mia"]


def test_search_and_species_are_conjunctive():
    pets = _pets()
    assert filter_pets(pets, "re", "Cat") == []
    assert [p.name for p in filter_pets(pets, "m", "cat")] == ["Mia"]


def test_home_requires_sign_in(client):
    r = client.get("/home", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"].startswith("/login")


def test_shelter_home_without_shelter_goes_to_onboarding(client):
    signed_up(client, "shelter", "paws@example.org")
    r = client.get("/home", follow_redirects=False)
    assert r.headers["location"].startswith("/shelter-setup")


def test_shelter_sees_only_its_own_pets_in_every_status(client):
    onboard_shelter(client, "other@example.org", name="Second Chance Rescue")
    add_pet(client, name="Stranger")
    client.get("/logout")

    onboard_shelter(client, "paws@example.org")
    add_pet(client, name="Buddy")
    add_pet(client, name="Luna", species="Cat")
    own = main.store.select_one("shelters", name="Happy Paws Shelter")
    main.store.update("pets", {"status": "adopted"}, shelter_id=own.id, name="Luna")

    r = client.get("/home")
    assert r.status_code == 200
    assert "Your Pets" in r.text
    assert "Buddy" in r.text
    assert "Luna" in r.text
    assert "badge-adopted" in r.text
    assert "Stranger" not in r.text

    dashboard = main.load_dashboard(main.store, main.AuthContext(
        identity=main.identity_service.identities[1],
        access_token="t",
        profile=main.store.select_one("profiles", id=own.user_id),
    ))
    assert dashboard.variant == "shelter"
    assert [p.name for p in dashboard.pets] == ["Luna", "Buddy"]
    assert all(p.shelter_id == own.id for p in dashboard.pets)


def test_adopter_catalog_lists_available_pets_with_shelter(client):
    onboard_shelter(client, "paws@example.org")
    add_pet(client, name="Rex", species="Dog")
    add_pet(client, name="Mia", species="Cat")
    add_pet(client, name="Gone", species="Dog")
    main.store.update("pets", {"status": "adopted"}, name="Gone")
    client.get("/logout")

    signed_up(client, "adopter", "ada@example.com")
    r = client.get("/home")
    assert r.status_code == 200
    assert "2 pets available for adoption" in r.text
    assert "Happy Paws Shelter" in r.text
    assert "Gone" not in r.text

    r = client.get("/home", params={"q": "re"})
    assert "Rex" in r.text
    assert "Mia" not in r.text

    r = client.get("/home", params={"species": "Cat"})
    assert "Mia" in r.text
    assert "Rex" not in r.text

    r = client.get("/home", params={"species": "All"})
    assert "Mia" in r.text
    assert "Rex" in r.text


def test_adopter_dashboard_is_newest_first():
    ctx_store = main.store
    shelter_id = uuid4()
    for name in ("First", "Second", "Third"):
        ctx_store.insert("pets", Pet(shelter_id=shelter_id, name=name, species="Dog"))

    identity = main.Identity(email="ada@example.com", password_hash="x")
    dashboard = main.load_dashboard(ctx_store, main.AuthContext(identity=identity, access_token="t"))
    assert dashboard.variant == "adopter"
    assert [p.name for p in dashboard.pets] == ["Third", "Second", "First"]
    assert dashboard.pets[0].shelter_name is None


def test_home_context_carries_only_what_the_page_renders(client):
    signed_up(client, "adopter", "ada@example.com", name="Ada Adopter")
    r = client.get("/home")
    assert "ctx" not in r.context
    assert r.context["dashboard"].name == "Ada Adopter"
    assert "Ada Adopter" in r.text
