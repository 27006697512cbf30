from .base import AlertStore
from .sql import SQLAlchemyAlertStore

__all__ = ["AlertStore", "SQLAlchemyAlertStore"]
