from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from app.config import Settings, get_settings
from app.core.exceptions import AuthError
from app.core.firebase import verify_id_token

logger = logging.getLogger(__name__)

security_scheme = HTTPBearer(auto_error=False)

GUEST_SESSION_HEADER = "x-session-id"
GUEST_SESSION_COOKIE = "session_id"
_MAX_SESSION_TOKEN_LENGTH = 128


@dataclass(frozen=True)
class Caller:
  """Identity of the party making a request: an authenticated user or a guest session."""

  user_id: str | None = None
  session_id: str | None = None

  @property
  def is_guest(self) -> bool:
    return self.user_id is None


def _guest_session_token(request: Request) -> str | None:
  raw = request.headers.get(GUEST_SESSION_HEADER) or request.cookies.get(GUEST_SESSION_COOKIE)
  if raw is None:
    return None
  token = raw.strip()
  # Reject empty or oversized tokens instead of scoping queries by them.
  if token == "" or len(token) > _MAX_SESSION_TOKEN_LENGTH:
    return None
  return token


async def get_caller(request: Request, token: Annotated[HTTPAuthorizationCredentials | None, Depends(security_scheme)]) -> Caller:
  """Resolve the caller from a Firebase bearer token, falling back to a guest session token."""
  if token is not None:
    decoded_claims = await run_in_threadpool(verify_id_token, token.credentials)
    # An invalid bearer token never degrades into guest access.
    if not decoded_claims or not decoded_claims.get("uid"):
      raise AuthError("Invalid authentication credentials.")
    return Caller(user_id=str(decoded_claims["uid"]))

  session_id = _guest_session_token(request)
  if session_id is None:
    raise AuthError()
  return Caller(session_id=session_id)


async def get_authenticated_caller(caller: Caller = Depends(get_caller)) -> Caller:  # noqa: B008
  """Require a signed-in user; guest sessions cannot own programs or runs."""
  if caller.is_guest:
    raise AuthError("Authentication required.")
  return caller


def _safe_compare_token(provided: str, expected: str) -> bool:
  return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_worker_secret(token: Annotated[HTTPAuthorizationCredentials | None, Depends(security_scheme)], settings: Settings = Depends(get_settings)) -> None:  # noqa: B008
  """Guard cron-driven worker endpoints with a shared bearer secret."""
  # Local development runs ticks without a secret.
  if not settings.is_production and settings.worker_secret is None:
    return

  if settings.worker_secret is None:
    logger.error("LENS_WORKER_SECRET not configured")
    raise AuthError("Unauthorized.")

  if token is None or not _safe_compare_token(token.credentials, settings.worker_secret):
    raise AuthError("Unauthorized.")
