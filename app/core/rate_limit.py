"""
Shared slowapi limiter.

Lives outside main.py so routers can decorate endpoints without importing the app.
"""
from slowapi import Limiter

from app.features.users.dependencies import get_authorization_header


limiter = Limiter(key_func=get_authorization_header)
