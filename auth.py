from typing import Optional

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import UnauthorizedError


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def issue_token(user_id: int, email: str) -> str:
    return _serializer().dumps({"id": user_id, "email": email})


def read_token(token: str, max_age_hours: Optional[int] = None) -> int:
    """Return the user id carried by ``token``.

    Raises UnauthorizedError when the signature is wrong or the token is
    older than ``max_age_hours`` (the configured lifetime by default).
    """
    if max_age_hours is None:
        max_age_hours = get_settings().token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except SignatureExpired as exc:
        raise UnauthorizedError("Token expired") from exc
    except BadSignature as exc:
        raise UnauthorizedError("Failed to authenticate token") from exc

    user_id = data.get("id") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise UnauthorizedError("Failed to authenticate token")
    return user_id


def token_from_header(authorization: Optional[str]) -> str:
    if not authorization:
        raise UnauthorizedError("No token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("No token provided")
    return token.strip()
