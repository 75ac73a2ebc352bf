import os
import json
import logging
import secrets
import smtplib
import threading
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Dict, List, Optional, Type
from uuid import UUID, uuid4

from passlib.context import CryptContext
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ROLES = ("adopter", "foster", "shelter")
PET_SEXES = ("male", "female", "unknown")
PET_STATUSES = ("available", "pending", "adopted", "fostered")
LIVING_SITUATIONS = ("house", "apartment", "condo", "other")
EXPERIENCE_LEVELS = ("first_time", "some_experience", "experienced")

AUTH_TOKEN_TTL = int(os.environ.get("AUTH_TOKEN_TTL", "3600"))  # seconds

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Errors ---

class BackendError(Exception):
    """Any failure reported by the identity service or the store."""


class AuthError(BackendError):
    pass


class ConflictError(BackendError):
    pass


# --- Identity Schemas ---

class Identity(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    email: str
    password_hash: str
    confirmed_at: Optional[datetime] = None
    metadata: Dict[str, str] = {}
    created_at: datetime = Field(default_factory=_now)

    @property
    def confirmed(self) -> bool:
        return self.confirmed_at is not None


class AuthSession(BaseModel):
    access_token: str
    user_id: UUID
    expires_at: datetime


class OutgoingEmail(BaseModel):
    to: str
    subject: str
    link: str
    sent_at: datetime = Field(default_factory=_now)


# --- Table Schemas ---

class Profile(BaseModel):
    id: UUID
    name: str
    role: str
    created_at: datetime = Field(default_factory=_now)


class Shelter(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str
    address: str
    city: str
    state: str
    phone: str
    email: str
    website: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class Pet(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    shelter_id: UUID
    name: str
    species: str
    breed: Optional[str] = None
    age: Optional[int] = None
    sex: str = "unknown"
    description: Optional[str] = None
    behavior: Optional[str] = None
    medical_history: Optional[str] = None
    is_vaccinated: bool = False
    is_neutered: bool = False
    status: str = "available"
    created_at: datetime = Field(default_factory=_now)


class Preference(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    preferred_species: List[str]
    preferred_age_min: Optional[int] = None
    preferred_age_max: Optional[int] = None
    has_children: bool = False
    has_other_pets: bool = False
    living_situation: str = "house"
    yard: bool = False
    experience_level: str = "first_time"
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


TABLES: Dict[str, Type[BaseModel]] = {
    "profiles": Profile,
    "shelters": Shelter,
    "pets": Pet,
    "preferences": Preference,
}

# Columns that may hold a given value only once per table.
UNIQUE_COLUMNS: Dict[str, tuple] = {
    "profiles": ("id",),
    "shelters": ("id", "user_id"),
    "pets": ("id",),
    "preferences": ("id", "user_id"),
}


def _write_json(path: str, data: dict) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


def _read_json(path: Optional[str]) -> Optional[dict]:
    if not path or not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except ValueError:
            # An empty or truncated state file is treated as no state
            logger.warning("Ignoring unreadable state file %s", path)
            return None


# --- Identity Service ---

class IdentityService:
    """Accounts, credentials, confirmation codes and session tokens.

    Sign-up leaves the identity unconfirmed and emails a one-time code; the
    code is redeemed through `exchange_code_for_session`, which confirms the
    identity and opens its first session.
    """

    def __init__(self, state_file: Optional[str] = None, token_ttl: int = AUTH_TOKEN_TTL):
        self.state_file = state_file
        self.token_ttl = token_ttl
        self.identities: List[Identity] = []
        self.confirmation_codes: Dict[str, UUID] = {}
        self.sessions: Dict[str, AuthSession] = {}
        self.outbox: List[OutgoingEmail] = []
        self._lock = threading.Lock()
        self.load_state()

    def load_state(self) -> None:
        data = _read_json(self.state_file)
        if not data:
            return
        self.identities = [Identity.model_validate(i) for i in data.get("identities", [])]
        self.confirmation_codes = {
            code: UUID(user_id) for code, user_id in data.get("confirmation_codes", {}).items()
        }
        self.sessions = {
            token: AuthSession.model_validate(s) for token, s in data.get("sessions", {}).items()
        }

    def save_state(self) -> None:
        if not self.state_file:
            return
        _write_json(self.state_file, {
            "identities": [i.model_dump(mode="json") for i in self.identities],
            "confirmation_codes": {code: str(uid) for code, uid in self.confirmation_codes.items()},
            "sessions": {token: s.model_dump(mode="json") for token, s in self.sessions.items()},
        })

    def _find_by_email(self, email: str) -> Optional[Identity]:
        needle = email.strip().lower()
        return next((i for i in self.identities if i.email == needle), None)

    def _find_by_id(self, user_id: UUID) -> Optional[Identity]:
        return next((i for i in self.identities if i.id == user_id), None)

    def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, str]] = None,
                redirect_to: str = "/auth/callback") -> Identity:
        """Create an unconfirmed identity and send its confirmation link."""
        with self._lock:
            if self._find_by_email(email):
                raise ConflictError("User already registered")
            identity = Identity(
                email=email.strip().lower(),
                password_hash=pwd_context.hash(password),
                metadata=dict(metadata or {}),
            )
            code = secrets.token_urlsafe(24)
            self.identities.append(identity)
            self.confirmation_codes[code] = identity.id
            self.save_state()

        separator = "&" if "?" in redirect_to else "?"
        try:
            self.send_confirmation_email(identity.email, f"{redirect_to}{separator}code={code}")
        except Exception:
            # an identity without a delivered code could never be confirmed
            with self._lock:
                self.identities.remove(identity)
                self.confirmation_codes.pop(code, None)
                self.save_state()
            logger.warning("Sign-up for %s rolled back, confirmation email not sent", identity.email)
            raise
        logger.info("Identity %s created for %s, awaiting confirmation", identity.id, identity.email)
        return identity

    def send_confirmation_email(self, email: str, link: str) -> None:
        message = OutgoingEmail(to=email, subject="Confirm your account", link=link)
        if not os.environ.get("EMAIL_HOST"):
            self.outbox.append(message)
            logger.info("Confirmation link for %s: %s", email, link)
            return

        msg = EmailMessage()
        msg["From"] = os.environ["EMAIL_FROM"]
        msg["To"] = email
        msg["Subject"] = message.subject
        msg.set_content(
            "\n".join(
                [
                    "Thanks for signing up for Pet Adoption.",
                    "Click the link below to activate your account.",
                    "",
                    link,
                ]
            )
        )
        try:
            with smtplib.SMTP_SSL(os.environ["EMAIL_HOST"], int(os.environ.get("EMAIL_PORT", "465"))) as smtp:
                smtp.login(os.environ["EMAIL_USER"], os.environ["EMAIL_PASS"])
                smtp.send_message(msg)
        except (OSError, smtplib.SMTPException) as exc:
            raise BackendError(f"Error sending confirmation email: {exc}") from exc
        self.outbox.append(message)

    def _open_session(self, identity: Identity) -> AuthSession:
        session = AuthSession(
            access_token=secrets.token_urlsafe(32),
            user_id=identity.id,
            expires_at=_now() + timedelta(seconds=self.token_ttl),
        )
        self.sessions[session.access_token] = session
        return session

    def exchange_code_for_session(self, code: str) -> AuthSession:
        """Redeem a confirmation code: confirm the identity and sign it in."""
        with self._lock:
            user_id = self.confirmation_codes.pop(code, None)
            identity = self._find_by_id(user_id) if user_id else None
            if identity is None:
                raise AuthError("Invalid or expired confirmation code")
            if identity.confirmed_at is None:
                identity.confirmed_at = _now()
            session = self._open_session(identity)
            self.save_state()
        logger.info("Identity %s confirmed", identity.id)
        return session

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        with self._lock:
            identity = self._find_by_email(email)
            if identity is None or not pwd_context.verify(password, identity.password_hash):
                raise AuthError("Invalid login credentials")
            if not identity.confirmed:
                raise AuthError("Email not confirmed")
            session = self._open_session(identity)
            self.save_state()
        return session

    def get_user(self, access_token: Optional[str]) -> Optional[Identity]:
        """Return the identity behind a live token, or None."""
        if not access_token:
            return None
        session = self.sessions.get(access_token)
        if session is None:
            return None
        if session.expires_at <= _now():
            with self._lock:
                self.sessions.pop(access_token, None)
                self.save_state()
            return None
        return self._find_by_id(session.user_id)

    def sign_out(self, access_token: Optional[str]) -> None:
        if not access_token:
            return
        with self._lock:
            if self.sessions.pop(access_token, None) is not None:
                self.save_state()


# --- Relational Store ---

class Store:
    """Row storage for profiles, shelters, pets and preferences.

    Filters are exact-match keyword arguments. Every write happens under one
    lock, which makes `upsert` a single atomic step.
    """

    def __init__(self, state_file: Optional[str] = None):
        self.state_file = state_file
        self.tables: Dict[str, List[BaseModel]] = {name: [] for name in TABLES}
        self._lock = threading.Lock()
        self.load_state()

    def load_state(self) -> None:
        data = _read_json(self.state_file)
        if not data:
            return
        for name, model in TABLES.items():
            self.tables[name] = [model.model_validate(row) for row in data.get(name, [])]

    def save_state(self) -> None:
        if not self.state_file:
            return
        _write_json(self.state_file, {
            name: [row.model_dump(mode="json") for row in rows]
            for name, rows in self.tables.items()
        })

    def _rows(self, table: str) -> List[BaseModel]:
        if table not in self.tables:
            raise BackendError(f'relation "{table}" does not exist')
        return self.tables[table]

    @staticmethod
    def _matches(row: BaseModel, filters: dict) -> bool:
        return all(getattr(row, column) == value for column, value in filters.items())

    def _check_unique(self, table: str, record: BaseModel, ignore: Optional[BaseModel] = None) -> None:
        for column in UNIQUE_COLUMNS.get(table, ()):
            value = getattr(record, column)
            for row in self.tables[table]:
                if row is not ignore and getattr(row, column) == value:
                    raise ConflictError(
                        f'duplicate key value violates unique constraint "{table}_{column}_key"'
                    )

    def select(self, table: str, order_by: Optional[str] = None, descending: bool = False,
               **filters) -> List[BaseModel]:
        rows = [row for row in self._rows(table) if self._matches(row, filters)]
        if order_by:
            # equal keys keep insertion order, newest first when descending
            if descending:
                rows.reverse()
            rows.sort(key=lambda row: getattr(row, order_by), reverse=descending)
        return [row.model_copy(deep=True) for row in rows]

    def select_one(self, table: str, **filters) -> Optional[BaseModel]:
        rows = self.select(table, **filters)
        return rows[0] if rows else None

    def insert(self, table: str, record: BaseModel) -> BaseModel:
        with self._lock:
            rows = self._rows(table)
            self._check_unique(table, record)
            stored = record.model_copy(deep=True)
            rows.append(stored)
            self.save_state()
        return stored.model_copy()

    def update(self, table: str, values: dict, **filters) -> List[BaseModel]:
        with self._lock:
            updated = []
            for index, row in enumerate(self._rows(table)):
                if not self._matches(row, filters):
                    continue
                replacement = row.model_copy(update=values)
                self._check_unique(table, replacement, ignore=row)
                self.tables[table][index] = replacement
                updated.append(replacement.model_copy())
            self.save_state()
        return updated

    def upsert(self, table: str, record: BaseModel, on_conflict: str) -> BaseModel:
        """Insert `record`, or overwrite the row sharing its `on_conflict` value.

        The existing row keeps its `id` and `created_at`.
        """
        with self._lock:
            rows = self._rows(table)
            key = getattr(record, on_conflict)
            for index, row in enumerate(rows):
                if getattr(row, on_conflict) == key:
                    values = record.model_dump(exclude={"id", "created_at"})
                    stored = row.model_copy(update=values)
                    rows[index] = stored
                    break
            else:
                self._check_unique(table, record)
                stored = record.model_copy(deep=True)
                rows.append(stored)
            self.save_state()
        return stored.model_copy()
