"""Caller identity for the document store."""
from .service import TokenData, create_access_token, verify_token, get_caller
from .router import router as auth_router

__all__ = [
    'TokenData',
    'create_access_token',
    'verify_token',
    'get_caller',
    'auth_router',
]
