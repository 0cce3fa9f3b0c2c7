import logging
from typing import Any

import firebase_admin
from firebase_admin import auth, credentials

from app.config import get_settings

logger = logging.getLogger(__name__)


def initialize_firebase() -> None:
  """Initializes the Firebase Admin SDK."""
  if firebase_admin._apps:
    return

  settings = get_settings()
  if not settings.firebase_project_id:
    logger.warning("Firebase Project ID not set. Firebase Admin SDK not initialized.")
    return

  try:
    if settings.firebase_service_account_json_path:
      cred = credentials.Certificate(settings.firebase_service_account_json_path)
      firebase_admin.initialize_app(cred, {"projectId": settings.firebase_project_id})
    else:
      # Use default credentials (e.g. Google Application Default Credentials)
      firebase_admin.initialize_app(options={"projectId": settings.firebase_project_id})
    logger.info("Firebase Admin SDK initialized successfully.")
  except (ValueError, OSError) as exc:
    logger.error("Failed to initialize Firebase Admin SDK: %s", exc)


def verify_id_token(id_token: str) -> dict[str, Any] | None:
  """Verifies a Firebase ID token. Lazily initializes if needed."""
  if not firebase_admin._apps:
    initialize_firebase()

  try:
    return auth.verify_id_token(id_token)
  except (ValueError, auth.InvalidIdTokenError, auth.ExpiredIdTokenError, auth.RevokedIdTokenError, auth.CertificateFetchError) as exc:
    logger.warning("Token verification failed: %s", type(exc).__name__)
    return None
