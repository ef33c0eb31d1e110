"""
Session and profile management.

One SessionManager per client holds the signed-in session; nothing lives in
module globals. Subscribers get synchronous change notifications in
registration order.

Sessions are signed JWTs so a client can save the token and resume later with
restore(). The HTTP layer uses the stateless authenticate()/resolve_token()
forms instead of the current-session state.
"""

import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from activity import ActivityLog, label_for, time_ago
from errors import (
    AlreadyExistsError,
    DuplicateKeyError,
    InvalidCredentialsError,
    NotFoundError,
    NotSignedInError,
)
from schemas import ProfileUpdate, UserProfile
from stats import StatsAggregator
from store import USERS, RecordStore, now_ms
from tracker import ActivityTracker

logger = logging.getLogger(__name__)

# JWT / Auth setup
SECRET_KEY = os.getenv("SECRET_KEY", "devsecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SIGNED_IN = "signed_in"
SIGNED_OUT = "signed_out"
PROFILE_CHANGED = "profile_changed"

Subscriber = Callable[[str, Any], None]


# ------------------------- Auth utils -------------------------

def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def generate_uid() -> str:
    return f"user_{now_ms()}_{uuid.uuid4().hex[:9]}"


def public_profile(profile: Optional[dict]) -> Optional[dict]:
    if profile is None:
        return None
    return {k: v for k, v in profile.items() if k != "passwordHash"}


class Session(BaseModel):
    uid: str
    email: str
    access_token: str
    token_type: str = "bearer"


class SessionManager:
    def __init__(
        self,
        store: RecordStore,
        stats: Optional[StatsAggregator] = None,
        activity_log: Optional[ActivityLog] = None,
        secret_key: str = SECRET_KEY,
        expire_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES,
    ):
        self.store = store
        self.stats = stats or StatsAggregator(store)
        self.activity_log = activity_log or ActivityLog(store)
        self.tracker = ActivityTracker(self.stats, self.activity_log, on_change=self.publish)
        self.secret_key = secret_key
        self.expire_minutes = expire_minutes
        self._session: Optional[Session] = None
        self._subscribers: List[Subscriber] = []

    # ------------------------- tokens -------------------------

    def create_access_token(self, uid: str, email: str, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=self.expire_minutes))
        return jwt.encode({"sub": uid, "email": email, "exp": expire}, self.secret_key, algorithm=ALGORITHM)

    def resolve_token(self, token: str) -> Optional[dict]:
        """Profile for a valid token, or None for bad, expired or orphaned tokens."""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
        except JWTError:
            return None
        uid = payload.get("sub")
        if not uid:
            return None
        return self.store.get(USERS, uid)

    # ------------------------- auth -------------------------

    def authenticate(self, email: str, password: str) -> dict:
        users = self.store.get_all_by(USERS, "email", normalize_email(email))
        user = users[0] if users else None
        if not user or not verify_password(password or "", user.get("passwordHash", "")):
            raise InvalidCredentialsError()
        return user

    def register(self, email: str, password: str, full_name: str = "", role: str = "Farmer") -> dict:
        """Create credentials and a default profile without touching session state."""
        email = normalize_email(email)
        if not email or not password:
            raise ValueError("Please fill in all required fields")
        if self.store.count_by(USERS, "email", email):
            raise AlreadyExistsError("User with this email already exists")
        profile = UserProfile(
            uid=generate_uid(),
            email=email,
            passwordHash=get_password_hash(password),
            fullName=full_name or "",
            role=role or "Farmer",
        ).model_dump(exclude={"createdAt", "lastActive"})
        try:
            profile = self.store.create(USERS, profile)
        except DuplicateKeyError as e:
            raise AlreadyExistsError("User with this email already exists") from e
        logger.info("User signed up: %s", profile["uid"])
        return self.store.get(USERS, profile["uid"])

    def login(self, email: str, password: str) -> dict:
        """Check credentials and refresh lastActive without touching session state."""
        user = self.authenticate(email, password)
        self.store.update(USERS, user["uid"], {})
        logger.info("User signed in: %s", user["uid"])
        return self.store.get(USERS, user["uid"])

    def sign_up(self, email: str, password: str, full_name: str = "") -> Session:
        profile = self.register(email, password, full_name)
        return self._start(profile)

    def sign_in(self, email: str, password: str) -> Session:
        profile = self.login(email, password)
        return self._start(profile)

    def restore(self, token: str) -> Optional[Session]:
        profile = self.resolve_token(token)
        if profile is None:
            return None
        return self._start(profile, token)

    def sign_out(self):
        if self._session is None:
            return
        uid = self._session.uid
        self._session = None
        logger.info("User signed out: %s", uid)
        self._emit(SIGNED_OUT, None)

    def current_session(self) -> Optional[Session]:
        return self._session

    def _start(self, profile: dict, token: Optional[str] = None) -> Session:
        self._session = Session(
            uid=profile["uid"],
            email=profile["email"],
            access_token=token or self.create_access_token(profile["uid"], profile["email"]),
        )
        self._emit(SIGNED_IN, public_profile(profile))
        return self._session

    def _require(self) -> Session:
        if self._session is None:
            raise NotSignedInError()
        return self._session

    # ------------------------- profile -------------------------

    def profile(self) -> dict:
        uid = self._require().uid
        profile = self.store.get(USERS, uid)
        if profile is None:
            raise NotFoundError(USERS, uid)
        return public_profile(profile)

    def update_profile(self, updates: Dict[str, Any]) -> dict:
        return public_profile(self.update_user(self._require().uid, updates))

    def update_user(self, uid: str, updates: Dict[str, Any]) -> dict:
        changes = ProfileUpdate.model_validate(updates).model_dump(exclude_none=True)
        self.store.update(USERS, uid, changes)
        self.activity_log.record(uid, "profile_updated", changes)
        self.publish(uid)
        return self.store.get(USERS, uid)

    def track(self, activity_type: str, payload: Optional[Dict[str, Any]] = None) -> Optional[dict]:
        return self.tracker.track(self._require().uid, activity_type, payload)

    def dashboard(self, n: int = 5) -> dict:
        return self.dashboard_for(self._require().uid, n)

    def dashboard_for(self, uid: str, n: int = 5) -> dict:
        profile = self.store.get(USERS, uid)
        if profile is None:
            raise NotFoundError(USERS, uid)
        now = now_ms()
        recent = [
            {**entry, "label": label_for(entry["type"]), "timeAgo": time_ago(entry["timestamp"], now)}
            for entry in self.activity_log.recent(uid, n)
        ]
        dashboard = profile.get("dashboard") or {}
        return {
            "profile": public_profile(profile),
            "stats": profile.get("stats", {}),
            "recentActivity": recent,
            "inventory": dashboard.get("inventory", {}),
            "orders": self.stats.order_buckets(uid),
            "financialSummary": dashboard.get("financialSummary", {}),
        }

    # ------------------------- subscriptions -------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(event, data)``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, uid: str):
        """Notify subscribers that ``uid``'s data changed, if it is the signed-in user."""
        if self._session is None or self._session.uid != uid:
            return
        self._emit(PROFILE_CHANGED, public_profile(self.store.get(USERS, uid)))

    def _emit(self, event: str, data):
        for callback in list(self._subscribers):
            try:
                callback(event, data)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, event)
