import os
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional
from urllib.parse import urlencode
from uuid import UUID

from dotenv import load_dotenv
from email_validator import EmailNotValidError, validate_email
from fastapi import FastAPI, Request, Form
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, HttpUrl, TypeAdapter, ValidationError, field_validator, model_validator
from pydantic_core import PydanticCustomError
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import RedirectResponse
from starlette.status import HTTP_303_SEE_OTHER, HTTP_400_BAD_REQUEST

from backend import (
    EXPERIENCE_LEVELS,
    LIVING_SITUATIONS,
    PET_SEXES,
    ROLES,
    BackendError,
    Identity,
    IdentityService,
    Pet,
    Preference,
    Profile,
    Shelter,
    Store,
)

load_dotenv()

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
STATE_DIR = os.environ.get("STATE_DIR", "data")

SPECIES_OPTIONS = ["Dog", "Cat", "Rabbit", "Bird", "Fish", "Reptile", "Other"]

# --- App Setup ---
app = FastAPI()

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-please-change")
SESSION_MAX_AGE = int(os.environ.get("SESSION_MAX_AGE", "3600"))  # seconds
SESSION_HTTPS_ONLY = bool(int(os.environ.get("SESSION_HTTPS_ONLY", "0")))
SESSION_SAME_SITE = os.environ.get("SESSION_SAME_SITE", "lax")
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    max_age=SESSION_MAX_AGE,
    same_site=SESSION_SAME_SITE,
    https_only=SESSION_HTTPS_ONLY,
)

# Simple in-memory rate limiter for sign-in (per-IP)
LOGIN_ATTEMPTS: Dict[str, List[float]] = {}
LOGIN_WINDOW = int(os.environ.get("LOGIN_WINDOW", "300"))  # seconds
LOGIN_MAX_ATTEMPTS = int(os.environ.get("LOGIN_MAX_ATTEMPTS", "5"))

app.mount("/static", StaticFiles(directory=os.path.join(BASE_DIR, "static")), name="static")
templates = Jinja2Templates(directory=os.path.join(BASE_DIR, "templates"))
templates.env.globals.update(
    sexes=PET_SEXES,
    living_situations=LIVING_SITUATIONS,
    experience_levels=EXPERIENCE_LEVELS,
)


def _state_file(name: str) -> Optional[str]:
    return os.path.join(STATE_DIR, name) if STATE_DIR else None


# External collaborators. Tests replace these module attributes.
identity_service = IdentityService(state_file=_state_file("identity.json"))
store = Store(state_file=_state_file("store.json"))


# --- Form Schemas ---

_http_url = TypeAdapter(HttpUrl)


def _min_length(value: str, size: int, message: str) -> str:
    value = value.strip()
    if len(value) < size:
        raise ValueError(message)
    return value


def _valid_email(value: str, message: str) -> str:
    try:
        return validate_email(value.strip(), check_deliverability=False).normalized
    except EmailNotValidError:
        raise ValueError(message) from None


def _blank_to_none(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def field_errors(exc: ValidationError) -> Dict[str, str]:
    """Flatten a pydantic error into one message per form field."""
    errors: Dict[str, str] = {}
    for err in exc.errors():
        field = str(err["loc"][0]) if err["loc"] else "form"
        cause = err.get("ctx", {}).get("error")
        errors.setdefault(field, str(cause) if cause else err["msg"])
    return errors


class RegistrationForm(BaseModel):
    name: str
    email: str
    password: str
    confirm_password: str
    role: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _min_length(value, 2, "Name must be at least 2 characters")

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _valid_email(value, "Invalid email address")

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("Password must be at least 8 characters")
        return value

    @model_validator(mode="wrap")
    @classmethod
    def _check_confirmation(cls, data, handler):
        """Compare the submitted passwords even when other fields fail."""
        try:
            form = handler(data)
            errors = []
        except ValidationError as exc:
            form = None
            errors = exc.errors()
        if (
            isinstance(data, dict)
            and data.get("password") != data.get("confirm_password")
            and not any(err["loc"][:1] == ("confirm_password",) for err in errors)
        ):
            errors.append({
                "type": PydanticCustomError("value_error", "Passwords don't match"),
                "loc": ("confirm_password",),
                "input": data.get("confirm_password"),
            })
        if errors:
            raise ValidationError.from_exception_data(cls.__name__, errors)
        return form

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: Optional[str]) -> str:
        if not value:
            raise ValueError("Please select an account type")
        if value not in ROLES:
            raise ValueError("Invalid account type")
        return value


class ShelterForm(BaseModel):
    name: str
    address: str
    city: str
    state: str
    phone: str
    email: str
    website: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _min_length(value, 2, "Shelter name must be at least 2 characters")

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        return _min_length(value, 5, "Please enter a valid address")

    @field_validator("city")
    @classmethod
    def _check_city(cls, value: str) -> str:
        return _min_length(value, 2, "City is required")

    @field_validator("state")
    @classmethod
    def _check_state(cls, value: str) -> str:
        return _min_length(value, 2, "State is required")

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        return _min_length(value, 10, "Please enter a valid phone number")

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _valid_email(value, "Please enter a valid email")

    @field_validator("website", mode="before")
    @classmethod
    def _check_website(cls, value):
        value = _blank_to_none(value)
        if value is None:
            return None
        try:
            _http_url.validate_python(value)
        except ValidationError:
            raise ValueError("Please enter a valid URL") from None
        return value


class PetForm(BaseModel):
    name: str
    species: str
    breed: Optional[str] = None
    age: Optional[int] = None
    sex: Literal["male", "female", "unknown"] = "unknown"
    description: Optional[str] = None
    behavior: Optional[str] = None
    medical_history: Optional[str] = None
    is_vaccinated: bool = False
    is_neutered: bool = False

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _min_length(value, 1, "Pet name is required")

    @field_validator("species")
    @classmethod
    def _check_species(cls, value: str) -> str:
        return _min_length(value, 1, "Species is required")

    @field_validator("breed", "age", "description", "behavior", "medical_history", mode="before")
    @classmethod
    def _optional_fields(cls, value):
        return _blank_to_none(value)

    @field_validator("age")
    @classmethod
    def _check_age(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("Age must be a positive number")
        return value


class PreferenceForm(BaseModel):
    preferred_species: List[str]
    preferred_age_min: Optional[int] = None
    preferred_age_max: Optional[int] = None
    has_children: bool = False
    has_other_pets: bool = False
    living_situation: Literal["house", "apartment", "condo", "other"] = "house"
    yard: bool = False
    experience_level: Literal["first_time", "some_experience", "experienced"] = "first_time"
    notes: Optional[str] = None

    @field_validator("preferred_species")
    @classmethod
    def _check_species(cls, value: List[str]) -> List[str]:
        species = list(dict.fromkeys(s.strip() for s in value if s and s.strip()))
        if not species:
            raise ValueError("Select at least one species")
        return species

    @field_validator("preferred_age_min", "preferred_age_max", "notes", mode="before")
    @classmethod
    def _optional_fields(cls, value):
        return _blank_to_none(value)

    @field_validator("preferred_age_min", "preferred_age_max")
    @classmethod
    def _check_age(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("Age must be a positive number")
        return value


# --- Session Context ---

@dataclass
class AuthContext:
    """The signed-in identity, handed explicitly to every flow."""

    identity: Identity
    access_token: str
    profile: Optional[Profile] = None

    @property
    def user_id(self) -> UUID:
        return self.identity.id

    @property
    def role(self) -> Optional[str]:
        if self.profile is not None:
            return self.profile.role
        return self.identity.metadata.get("role")

    @property
    def display_name(self) -> str:
        if self.profile is not None:
            return self.profile.name
        return self.identity.metadata.get("name") or self.identity.email


def get_auth_context(request: Request) -> Optional[AuthContext]:
    """Return the AuthContext for the session's access token, if it is still live."""
    token = request.session.get("access_token")
    identity = identity_service.get_user(token)
    if identity is None:
        request.session.pop("access_token", None)
        return None
    profile = store.select_one("profiles", id=identity.id)
    return AuthContext(identity=identity, access_token=token, profile=profile)


# --- Profile Router ---

class LandingState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_SHELTER_ONBOARDING = "awaiting_shelter_onboarding"
    ACTIVE_ADOPTER = "active_adopter"
    ACTIVE_SHELTER = "active_shelter"


LANDING_ROUTES = {
    LandingState.UNAUTHENTICATED: "/login",
    LandingState.AWAITING_CONFIRMATION: "/login",
    LandingState.AWAITING_SHELTER_ONBOARDING: "/shelter-setup",
    LandingState.ACTIVE_ADOPTER: "/home",
    LandingState.ACTIVE_SHELTER: "/home",
}


def decide_landing(identity: Optional[Identity], profile: Optional[Profile], has_shelter: bool) -> LandingState:
    """Pure landing decision for an authentication event.

    A missing profile falls back to the role recorded on the identity at sign-up.
    """
    if identity is None:
        return LandingState.UNAUTHENTICATED
    if not identity.confirmed:
        return LandingState.AWAITING_CONFIRMATION
    role = profile.role if profile is not None else identity.metadata.get("role")
    if role == "shelter":
        if has_shelter:
            return LandingState.ACTIVE_SHELTER
        return LandingState.AWAITING_SHELTER_ONBOARDING
    return LandingState.ACTIVE_ADOPTER


def resolve_landing(ctx: Optional[AuthContext]) -> LandingState:
    if ctx is None:
        return decide_landing(None, None, False)
    has_shelter = False
    if ctx.role == "shelter":
        has_shelter = store.select_one("shelters", user_id=ctx.user_id) is not None
    return decide_landing(ctx.identity, ctx.profile, has_shelter)


def route_for(state: LandingState) -> str:
    return LANDING_ROUTES[state]


# --- Flows ---

class PreconditionFailed(Exception):
    """The caller must first visit `redirect_to`."""

    def __init__(self, redirect_to: str, message: Optional[str] = None):
        super().__init__(message or redirect_to)
        self.redirect_to = redirect_to
        self.message = message


class DuplicatePetName(Exception):
    def __init__(self, name: str):
        super().__init__(f'A pet named "{name}" already exists in your shelter')
        self.name = name


def _require(ctx: Optional[AuthContext], role: Optional[str] = None, exclude: Optional[str] = None) -> AuthContext:
    if ctx is None:
        raise PreconditionFailed("/login", "Not authenticated")
    if role is not None and ctx.role != role:
        raise PreconditionFailed("/home")
    if exclude is not None and ctx.role == exclude:
        raise PreconditionFailed("/home")
    return ctx


def register_account(identity: IdentityService, rows: Store, form: RegistrationForm, redirect_to: str) -> Identity:
    """Create the identity, then its profile row.

    There is no rollback: if the profile insert fails the identity stays behind
    without a profile.
    """
    account = identity.sign_up(
        form.email,
        form.password,
        metadata={"name": form.name, "role": form.role},
        redirect_to=redirect_to,
    )
    try:
        rows.insert("profiles", Profile(id=account.id, name=form.name, role=form.role))
    except BackendError:
        logger.error("Profile insert failed; identity %s (%s) has no profile", account.id, account.email)
        raise
    logger.info("Registered %s as %s", account.email, form.role)
    return account


def save_shelter(rows: Store, ctx: Optional[AuthContext], form: ShelterForm) -> Shelter:
    ctx = _require(ctx, role="shelter")
    shelter = rows.upsert("shelters", Shelter(user_id=ctx.user_id, **form.model_dump()), on_conflict="user_id")
    logger.info("Saved shelter %s for user %s", shelter.id, ctx.user_id)
    return shelter


def register_pet(rows: Store, ctx: Optional[AuthContext], form: PetForm) -> Pet:
    """Add a pet to the caller's shelter.

    Name uniqueness is checked before the insert and is not enforced by the store.
    """
    ctx = _require(ctx, role="shelter")
    shelter = rows.select_one("shelters", user_id=ctx.user_id)
    if shelter is None:
        raise PreconditionFailed("/shelter-setup", "Please complete your shelter profile first")
    if rows.select_one("pets", shelter_id=shelter.id, name=form.name) is not None:
        raise DuplicatePetName(form.name)
    pet = rows.insert("pets", Pet(shelter_id=shelter.id, status="available", **form.model_dump()))
    logger.info("Registered pet %s (%s) for shelter %s", pet.name, pet.id, shelter.id)
    return pet


def save_preferences(rows: Store, ctx: Optional[AuthContext], form: PreferenceForm) -> Preference:
    ctx = _require(ctx, exclude="shelter")
    preference = rows.upsert("preferences", Preference(user_id=ctx.user_id, **form.model_dump()), on_conflict="user_id")
    logger.info("Saved preferences for user %s", ctx.user_id)
    return preference


class PetListing(Pet):
    """A pet joined with the public identity of its shelter."""

    shelter_name: Optional[str] = None
    shelter_city: Optional[str] = None
    shelter_state: Optional[str] = None


@dataclass
class Dashboard:
    variant: str
    name: str
    role: str
    pets: List[Pet]
    shelter: Optional[Shelter] = None


def load_dashboard(rows: Store, ctx: Optional[AuthContext]) -> Dashboard:
    ctx = _require(ctx)
    if ctx.role == "shelter":
        shelter = rows.select_one("shelters", user_id=ctx.user_id)
        if shelter is None:
            raise PreconditionFailed("/shelter-setup")
        pets = rows.select("pets", order_by="created_at", descending=True, shelter_id=shelter.id)
        return Dashboard(variant="shelter", name=shelter.name, role="shelter", pets=pets, shelter=shelter)

    shelters: Dict[UUID, Optional[Shelter]] = {}
    listings = []
    for pet in rows.select("pets", order_by="created_at", descending=True, status="available"):
        if pet.shelter_id not in shelters:
            shelters[pet.shelter_id] = rows.select_one("shelters", id=pet.shelter_id)
        shelter = shelters[pet.shelter_id]
        listings.append(PetListing(
            **pet.model_dump(),
            shelter_name=shelter.name if shelter else None,
            shelter_city=shelter.city if shelter else None,
            shelter_state=shelter.state if shelter else None,
        ))
    return Dashboard(variant="adopter", name=ctx.display_name, role=ctx.role or "adopter", pets=listings)


def filter_pets(pets: List[Pet], search: str = "", species: str = "") -> List[Pet]:
    """Case-insensitive search over name/species/breed, AND an exact species match.

    An empty species or "All" disables the species filter.
    """
    needle = (search or "").strip().lower()
    wanted = (species or "").strip().lower()
    if wanted == "all":
        wanted = ""

    def matches(p: Pet) -> bool:
        haystack = (p.name, p.species, p.breed or "")
        matches_search = any(needle in text.lower() for text in haystack)
        matches_species = not wanted or p.species.lower() == wanted
        return matches_search and matches_species

    return [p for p in pets if matches(p)]


def species_choices(pets: List[Pet]) -> List[str]:
    return list(dict.fromkeys(p.species for p in pets))


# --- Helpers ---

def redirect(url: str, **params) -> RedirectResponse:
    query = {k: v for k, v in params.items() if v}
    if query:
        url = f"{url}?{urlencode(query)}"
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


def render(request: Request, name: str, context: dict, status_code: int = 200):
    context.setdefault("errors", {})
    context.setdefault("values", {})
    context.setdefault("message", None)
    context.setdefault("notice", request.query_params.get("error"))
    return templates.TemplateResponse(request, name, context, status_code=status_code)


# --- 1. Entry Points ---

@app.get("/", tags=["Core Pages"])
def read_root(request: Request):
    """Sends the visitor to the page that matches their account state."""
    return redirect(route_for(resolve_landing(get_auth_context(request))))


@app.get("/auth/callback", name="auth_callback", tags=["Authentication"])
def auth_callback(request: Request, code: Optional[str] = None):
    """Landing point of the emailed confirmation link."""
    if code:
        try:
            session = identity_service.exchange_code_for_session(code)
            request.session["access_token"] = session.access_token
        except BackendError as e:
            logger.warning("Code exchange failed: %s", e)
    return redirect(route_for(resolve_landing(get_auth_context(request))))


# --- 2. Authentication ---

@app.get("/login", tags=["Authentication"])
def read_login_page(request: Request):
    context = {
        "error": request.query_params.get("error"),
        "success": request.query_params.get("success"),
        "notice": None,
    }
    return render(request, "login.html", context)


@app.post("/login", tags=["Authentication"])
def process_login(request: Request, email: str = Form(""), password: str = Form("")):
    client_host = request.client.host if request.client else "unknown"
    now_ts = datetime.now(timezone.utc).timestamp()
    attempts = [ts for ts in LOGIN_ATTEMPTS.get(client_host, []) if now_ts - ts < LOGIN_WINDOW]
    if not attempts:
        LOGIN_ATTEMPTS.pop(client_host, None)
    if len(attempts) >= LOGIN_MAX_ATTEMPTS:
        return redirect("/login", error="Too many login attempts")

    try:
        session = identity_service.sign_in_with_password(email, password)
    except BackendError as e:
        attempts.append(now_ts)
        LOGIN_ATTEMPTS[client_host] = attempts
        return redirect("/login", error=str(e))

    LOGIN_ATTEMPTS.pop(client_host, None)
    request.session["access_token"] = session.access_token
    return redirect(route_for(resolve_landing(get_auth_context(request))))


@app.api_route("/logout", methods=["GET", "POST"], tags=["Authentication"])
def process_logout(request: Request):
    """Ends the identity session and returns to sign-in."""
    identity_service.sign_out(request.session.get("access_token"))
    request.session.clear()
    return redirect("/login", success="Signed out!")


@app.get("/register", tags=["Authentication"])
def read_register_page(request: Request):
    return render(request, "register.html", {"roles": ROLES, "email_sent": False})


@app.post("/register", tags=["Authentication"])
def process_registration(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    role: Optional[str] = Form(None),
):
    values = {"name": name, "email": email, "role": role}
    context = {"roles": ROLES, "email_sent": False, "values": values}
    try:
        form = RegistrationForm(
            name=name, email=email, password=password, confirm_password=confirm_password, role=role
        )
    except ValidationError as exc:
        context["errors"] = field_errors(exc)
        return render(request, "register.html", context, status_code=HTTP_400_BAD_REQUEST)

    try:
        register_account(identity_service, store, form, str(request.url_for("auth_callback")))
    except BackendError as e:
        context["message"] = str(e)
        return render(request, "register.html", context, status_code=HTTP_400_BAD_REQUEST)

    context.update(email_sent=True, message="Check your email to confirm your account!")
    return render(request, "register.html", context)


# --- 3. Shelter & Pet Management ---

@app.get("/shelter-setup", tags=["Shelter Management"])
def read_shelter_setup_page(request: Request):
    ctx = get_auth_context(request)
    try:
        ctx = _require(ctx, role="shelter")
    except PreconditionFailed as e:
        return redirect(e.redirect_to, error=e.message)
    shelter = store.select_one("shelters", user_id=ctx.user_id)
    values = shelter.model_dump() if shelter else {}
    return render(request, "shelter_setup.html", {"values": values, "editing": shelter is not None})


@app.post("/shelter-setup", tags=["Shelter Management"])
def process_shelter_setup(
    request: Request,
    name: str = Form(""),
    address: str = Form(""),
    city: str = Form(""),
    state: str = Form(""),
    phone: str = Form(""),
    email: str = Form(""),
    website: str = Form(""),
):
    ctx = get_auth_context(request)
    values = {"name": name, "address": address, "city": city, "state": state,
              "phone": phone, "email": email, "website": website}
    context = {"values": values, "editing": False}
    try:
        form = ShelterForm(**values)
    except ValidationError as exc:
        context["errors"] = field_errors(exc)
        return render(request, "shelter_setup.html", context, status_code=HTTP_400_BAD_REQUEST)

    try:
        save_shelter(store, ctx, form)
    except PreconditionFailed as e:
        return redirect(e.redirect_to, error=e.message)
    except BackendError as e:
        context["message"] = str(e)
        return render(request, "shelter_setup.html", context, status_code=HTTP_400_BAD_REQUEST)

    return redirect("/pet-register", success="Shelter profile saved!")


@app.get("/pet-register", tags=["Shelter Management"])
def read_pet_register_page(request: Request):
    ctx = get_auth_context(request)
    try:
        ctx = _require(ctx, role="shelter")
        if store.select_one("shelters", user_id=ctx.user_id) is None:
            raise PreconditionFailed("/shelter-setup", "Please complete your shelter profile first")
    except PreconditionFailed as e:
        return redirect(e.redirect_to, error=e.message)
    context = {"values": {"sex": "unknown"}, "success": request.query_params.get("success")}
    return render(request, "pet_register.html", context)


@app.post("/pet-register", tags=["Shelter Management"])
def process_pet_register(
    request: Request,
    name: str = Form(""),
    species: str = Form(""),
    breed: str = Form(""),
    age: str = Form(""),
    sex: str = Form("unknown"),
    description: str = Form(""),
    behavior: str = Form(""),
    medical_history: str = Form(""),
    is_vaccinated: bool = Form(False),
    is_neutered: bool = Form(False),
):
    ctx = get_auth_context(request)
    values = {"name": name, "species": species, "breed": breed, "age": age, "sex": sex,
              "description": description, "behavior": behavior, "medical_history": medical_history,
              "is_vaccinated": is_vaccinated, "is_neutered": is_neutered}
    context = {"values": values}
    try:
        form = PetForm(**values)
    except ValidationError as exc:
        context["errors"] = field_errors(exc)
        return render(request, "pet_register.html", context, status_code=HTTP_400_BAD_REQUEST)

    try:
        register_pet(store, ctx, form)
    except PreconditionFailed as e:
        return redirect(e.redirect_to, error=e.message)
    except (DuplicatePetName, BackendError) as e:
        context["message"] = str(e)
        return render(request, "pet_register.html", context, status_code=HTTP_400_BAD_REQUEST)

    return redirect("/home")


# --- 4. Adopter Preferences ---

@app.get("/preferences", tags=["Adopter"])
def read_preferences_page(request: Request):
    ctx = get_auth_context(request)
    try:
        ctx = _require(ctx, exclude="shelter")
    except PreconditionFailed as e:
        return redirect(e.redirect_to, error=e.message)
    existing = store.select_one("preferences", user_id=ctx.user_id)
    values = existing.model_dump() if existing else {
        "preferred_species": [], "living_situation": "house", "experience_level": "first_time",
    }
    return render(request, "preferences.html", {"values": values, "species_options": SPECIES_OPTIONS})


@app.post("/preferences", tags=["Adopter"])
def process_preferences(
    request: Request,
    preferred_species: List[str] = Form([]),
    preferred_age_min: str = Form(""),
    preferred_age_max: str = Form(""),
    has_children: bool = Form(False),
    has_other_pets: bool = Form(False),
    living_situation: str = Form("house"),
    yard: bool = Form(False),
    experience_level: str = Form("first_time"),
    notes: str = Form(""),
):
    ctx = get_auth_context(request)
    values = {"preferred_species": preferred_species, "preferred_age_min": preferred_age_min,
              "preferred_age_max": preferred_age_max, "has_children": has_children,
              "has_other_pets": has_other_pets, "living_situation": living_situation, "yard": yard,
              "experience_level": experience_level, "notes": notes}
    context = {"values": values, "species_options": SPECIES_OPTIONS}
    try:
        form = PreferenceForm(**values)
    except ValidationError as exc:
        context["errors"] = field_errors(exc)
        return render(request, "preferences.html", context, status_code=HTTP_400_BAD_REQUEST)

    try:
        save_preferences(store, ctx, form)
    except PreconditionFailed as e:
        return redirect(e.redirect_to, error=e.message)
    except BackendError as e:
        context["message"] = str(e)
        return render(request, "preferences.html", context, status_code=HTTP_400_BAD_REQUEST)

    return redirect("/home", success="Preferences saved!")


# --- 5. Home Dashboard ---

@app.get("/home", tags=["Dashboard"])
def read_home(request: Request, q: str = "", species: str = ""):
    """Shelter inventory for shelters, the available-pet catalog for everyone else."""
    ctx = get_auth_context(request)
    try:
        dashboard = load_dashboard(store, ctx)
    except PreconditionFailed as e:
        return redirect(e.redirect_to, error=e.message)

    context = {"dashboard": dashboard, "success": request.query_params.get("success")}
    if dashboard.variant == "shelter":
        return render(request, "home_shelter.html", context)

    context.update(
        pets=filter_pets(dashboard.pets, q, species),
        species_list=species_choices(dashboard.pets),
        search=q,
        species=species if species.lower() != "all" else "",
    )
    return render(request, "home_adopter.html", context)
