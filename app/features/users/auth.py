"""
Appwrite session verification.

Tokens are Appwrite JWTs signed by Appwrite. The payload is decoded locally for
a cheap expiry and shape check, then every token is confirmed by asking Appwrite
for the account it belongs to. A forged or revoked token fails that call.
"""
from fastapi import HTTPException, status
from fastapi.concurrency import run_in_threadpool
from appwrite.client import Client
from appwrite.services.account import Account
from appwrite.exception import AppwriteException
import jwt

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def session_client(token: str) -> Client:
    """Appwrite client acting as the user the JWT was issued for."""
    if not (config.APPWRITE_ENDPOINT and config.APPWRITE_PROJECT_ID):
        log.error("Appwrite endpoint or project is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication backend is not configured",
        )
    client = Client()
    client.set_endpoint(config.APPWRITE_ENDPOINT)
    client.set_project(config.APPWRITE_PROJECT_ID)
    client.set_jwt(token)
    return client


def _as_dict(account) -> dict:
    # Recent SDKs return a pydantic model keyed by attribute, older ones the raw JSON
    return account.to_dict() if hasattr(account, "to_dict") else account


def decode_session_token(token: str) -> str:
    """
    Decode an Appwrite JWT and return the Appwrite user id it claims.

    The claim is not trusted until ``verify_session`` confirms it.

    Raises:
        HTTPException: 401 if the token is expired, malformed or has no user id
    """
    try:
        payload = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": True}
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        raise _unauthorized(f"Invalid token: {e}")

    appwrite_user_id = payload.get("userId")
    if not appwrite_user_id:
        raise _unauthorized("Invalid token payload")
    return appwrite_user_id


async def verify_session(token: str) -> dict:
    """
    Confirm a token with Appwrite and return the account it belongs to.

    Raises:
        HTTPException: 401 if Appwrite rejects the session or the account id
            differs from the one claimed by the token
    """
    claimed_id = decode_session_token(token)
    account = Account(session_client(token))
    try:
        appwrite_user = _as_dict(await run_in_threadpool(account.get))
    except AppwriteException as e:
        log.info("Appwrite rejected session for %s: %s", claimed_id, e)
        raise _unauthorized("Session could not be verified")

    if appwrite_user.get("$id") != claimed_id:
        log.warning("Token claims user %s but Appwrite session belongs to %s", claimed_id, appwrite_user.get("$id"))
        raise _unauthorized("Session could not be verified")
    return appwrite_user
