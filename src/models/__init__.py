from src.models.base import Base
from src.models.battle import Battle, Token

__all__ = [
    "Base",
    "Battle",
    "Token",
]
