"""Request-scoped identity and role of the caller"""
from typing import Optional

from workflow_errors import AuthorizationError

ROLES = ('client', 'freelancer', 'admin')


class AuthContext:
    """
    Resolved once per request from the session and the profile store, then
    passed explicitly into every workflow call.
    """

    __slots__ = ('user_id', 'role')

    def __init__(self, user_id: int, role: str):
        self.user_id = user_id
        self.role = role

    def __repr__(self):
        return f'<AuthContext user_id={self.user_id} role={self.role}>'

    @property
    def is_client(self) -> bool:
        return self.role == 'client'

    @property
    def is_freelancer(self) -> bool:
        return self.role == 'freelancer'

    def require_role(self, role: str, message: Optional[str] = None):
        if self.role != role:
            raise AuthorizationError(message or f'Only {role}s can perform this action')

    def to_dict(self):
        return {'user_id': self.user_id, 'role': self.role}


def resolve_auth_context(db, Profile, user_id) -> Optional[AuthContext]:
    """Look up the caller's profile; None when there is no usable profile"""
    if user_id is None:
        return None
    profile = db.session.get(Profile, user_id)
    if not profile or profile.role not in ROLES:
        return None
    return AuthContext(profile.id, profile.role)
