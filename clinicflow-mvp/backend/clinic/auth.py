"""
Actor — 调用方身份。

认证本身不在本服务里做：上游网关校验 token 后，把用户 id 和角色放进
X-Actor-Id / X-Actor-Role 请求头。Service 层只认 Actor，不碰 request。
"""

from dataclasses import dataclass

from .exceptions import UnauthorizedError

KNOWN_ROLES = ('clinic', 'doctor', 'assigner', 'jrdoctor')


@dataclass(frozen=True)
class Actor:
    id: str
    role: str


def actor_from_request(request) -> Actor:
    actor_id = (request.headers.get('X-Actor-Id') or '').strip()
    role = (request.headers.get('X-Actor-Role') or '').strip().lower()

    if not actor_id or not role:
        raise UnauthorizedError(
            message='Missing actor headers.',
            code='MISSING_ACTOR',
            detail={'required_headers': ['X-Actor-Id', 'X-Actor-Role']},
        )
    if role not in KNOWN_ROLES:
        raise UnauthorizedError(
            message=f"Unknown role {role!r}.",
            code='UNKNOWN_ROLE',
            detail={'known_roles': list(KNOWN_ROLES)},
        )
    return Actor(id=actor_id, role=role)


def require_role(actor, roles, action):
    if actor is None or actor.role not in roles:
        raise UnauthorizedError(
            message=f"Role {getattr(actor, 'role', None)!r} is not allowed to {action}.",
            code='ROLE_NOT_ALLOWED',
            detail={'allowed_roles': list(roles)},
        )
