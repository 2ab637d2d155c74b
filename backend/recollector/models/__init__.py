# Recollector Models
from recollector.models.base import BaseModel
from recollector.models.revoked_token import RevokedToken
from recollector.models.user import User

__all__ = [
    "BaseModel",
    "RevokedToken",
    "User",
]
