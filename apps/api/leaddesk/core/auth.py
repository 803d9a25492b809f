from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from leaddesk.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub=ANONYMOUS_SUBJECT)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS_SUBJECT)

    subject = str(payload.get("sub") or ANONYMOUS_SUBJECT)
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject)
