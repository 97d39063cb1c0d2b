from .models import Principal
from .provider import get_auth_provider
from .rbac import require_role

__all__ = ["Principal", "get_auth_provider", "require_role"]
