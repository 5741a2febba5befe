from app.api.v1 import billing

__all__ = [
    "billing",
]
