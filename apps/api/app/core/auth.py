from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    workspace_ids: list[str] = field(default_factory=list)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        subject = str(payload.get("sub", "anonymous"))
        roles = payload.get("roles", ["user"])
        if not isinstance(roles, list):
            roles = ["user"]
        workspaces = payload.get("workspaces", [])
        if not isinstance(workspaces, list):
            workspaces = []
        return AuthUser(
            sub=subject,
            roles=[str(role) for role in roles],
            workspace_ids=[str(item) for item in workspaces],
        )
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])
