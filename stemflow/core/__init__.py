from stemflow.core.config import settings
from stemflow.core.db import get_db

__all__ = ["settings", "get_db"]
