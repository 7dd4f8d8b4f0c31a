import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from fastapi import Response
from itsdangerous import BadSignature, URLSafeSerializer
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import AuthenticationError, ValidationError
from models import Category, CategoryType, PaymentMethod, User, UserSession
from schemas import LoginIn, RegisterIn

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_id"

DEFAULT_EXPENSE_CATEGORIES = [
    "Food",
    "Transportation",
    "Housing",
    "Entertainment",
    "Utilities",
    "Healthcare",
    "Shopping",
    "Other",
]
DEFAULT_INCOME_CATEGORIES = ["Salary", "Freelance", "Investments", "Gifts", "Other"]
DEFAULT_PAYMENT_METHODS = [
    "Cash",
    "Credit Card",
    "Debit Card",
    "Bank Transfer",
    "Mobile Payment",
]


@dataclass(frozen=True)
class CurrentUser:
    id: int
    name: str
    email: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.session_secret, salt="session-cookie")


def sign_session_id(session_id: str) -> str:
    return _serializer().dumps(session_id)


def unsign_session_id(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        value = _serializer().loads(token)
    except BadSignature:
        return None
    return value if isinstance(value, str) else None


def set_session_cookie(response: Response, session_id: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=SESSION_COOKIE,
        value=sign_session_id(session_id),
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )


def clear_session_cookie(response: Response) -> None:
    settings = get_settings()
    response.set_cookie(
        key=SESSION_COOKIE,
        value="",
        max_age=0,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )


class AuthService:
    """Credential and session store operations for one database session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: RegisterIn) -> User:
        name = data.name.strip()
        email = data.email.strip().lower()
        if not name or not email or not data.password:
            raise ValidationError("Missing required fields")
        if len(data.password.encode("utf-8")) > 72:
            raise ValidationError("Password is too long")

        existing = self.session.scalar(select(User.id).where(User.email == email))
        if existing:
            raise ValidationError("User already exists")

        user = User(name=name, email=email, password_hash=hash_password(data.password))
        try:
            self.session.add(user)
            self.session.flush()
            self._seed_defaults(user.id)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValidationError("User already exists") from exc
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def _seed_defaults(self, user_id: int) -> None:
        rows: list[object] = []
        for name in DEFAULT_EXPENSE_CATEGORIES:
            rows.append(Category(user_id=user_id, name=name, type=CategoryType.expense))
        for name in DEFAULT_INCOME_CATEGORIES:
            rows.append(Category(user_id=user_id, name=name, type=CategoryType.income))
        for name in DEFAULT_PAYMENT_METHODS:
            rows.append(PaymentMethod(user_id=user_id, name=name))
        self.session.add_all(rows)
        self.session.flush()

    def authenticate(self, data: LoginIn) -> User:
        email = data.email.strip().lower()
        user = self.session.scalar(select(User).where(User.email == email))
        if not user or not verify_password(data.password, user.password_hash):
            raise AuthenticationError("Invalid credentials")
        return user

    def create_session(self, user_id: int, *, now: Optional[datetime] = None) -> str:
        now = now or datetime.utcnow()
        settings = get_settings()
        self.session.execute(delete(UserSession).where(UserSession.user_id == user_id))
        session_id = secrets.token_urlsafe(32)
        self.session.add(
            UserSession(
                id=session_id,
                user_id=user_id,
                expires=now + timedelta(days=settings.session_days),
                created_at=now,
            )
        )
        self.session.commit()
        logger.info(f"session_created: user_id={user_id}")
        return session_id

    def resolve_user(
        self, session_id: Optional[str], *, now: Optional[datetime] = None
    ) -> Optional[CurrentUser]:
        if not session_id:
            return None
        now = now or datetime.utcnow()
        row = self.session.scalar(
            select(UserSession).where(
                UserSession.id == session_id, UserSession.expires > now
            )
        )
        if not row:
            return None
        user = self.session.get(User, row.user_id)
        if not user:
            return None
        return CurrentUser(id=user.id, name=user.name, email=user.email)

    def delete_session(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        try:
            self.session.execute(delete(UserSession).where(UserSession.id == session_id))
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.warning("session_delete_failed", exc_info=True)

    def sweep_expired(self, *, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        result = self.session.execute(
            delete(UserSession).where(UserSession.expires <= now)
        )
        self.session.commit()
        return int(result.rowcount or 0)
