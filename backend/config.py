"""
Configuration and Firebase initialization
"""

import json
import logging
import os

import firebase_admin
from firebase_admin import credentials
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables from .env file
# Try loading from parent directory (project root) first
env_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
if os.path.exists(env_path):
    load_dotenv(env_path)
else:
    # Try current directory
    load_dotenv()

# Project root directory (where .env file is located)
PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))

SERVICE_ACCOUNT_PATH = os.getenv("FIREBASE_SERVICE_ACCOUNT_PATH")
GOOGLE_APPLICATION_CREDENTIALS = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")

ENVIRONMENT = os.getenv("ENVIRONMENT", "production")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

# Expo push relay
EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
EXPO_ACCESS_TOKEN = os.getenv("EXPO_ACCESS_TOKEN", "")
PUSH_TIMEOUT_SECONDS = float(os.getenv("PUSH_TIMEOUT_SECONDS", "15"))

# Shared secret the change-event producer sends in X-Events-Secret
EVENTS_SECRET = os.getenv("EVENTS_SECRET", "")

# Local chat list / last-message cache
CHAT_CACHE_DIR = os.getenv("CHAT_CACHE_DIR", os.path.join(PROJECT_ROOT, ".chat_cache"))

RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "200/minute")
POKE_RATE_LIMIT = os.getenv("POKE_RATE_LIMIT", "5/minute")

BADGE_RECONCILE_INTERVAL_HOURS = int(os.getenv("BADGE_RECONCILE_INTERVAL_HOURS", "24"))


def resolve_path(path):
    """Relative paths are tried against the project root (where .env lives), then the cwd."""
    path = os.path.expanduser(path)
    if os.path.isabs(path):
        return path
    for base in (PROJECT_ROOT, os.getcwd()):
        candidate = os.path.abspath(os.path.join(base, path))
        if os.path.exists(candidate):
            return candidate
    return os.path.abspath(os.path.join(PROJECT_ROOT, path))


def _load_credentials():
    """
    Build Firebase credentials from the environment.
    GOOGLE_APPLICATION_CREDENTIALS may hold the full service account JSON (Render-style)
    or a file path; FIREBASE_SERVICE_ACCOUNT_PATH always holds a path.
    Returns None when Application Default Credentials should be used.
    """
    if SERVICE_ACCOUNT_PATH:
        path = resolve_path(SERVICE_ACCOUNT_PATH)
        if not os.path.exists(path):
            raise RuntimeError(f"Service account file not found: {path}")
        return credentials.Certificate(path)
    if GOOGLE_APPLICATION_CREDENTIALS:
        raw = GOOGLE_APPLICATION_CREDENTIALS.strip()
        if raw.startswith("{"):
            return credentials.Certificate(json.loads(raw))
        return credentials.Certificate(resolve_path(raw))
    return None


def init_firebase():
    """
    Initialize Firebase Admin SDK exactly once.
    Called on application startup, never at import time, so tests can run without credentials.
    """
    if firebase_admin._apps:
        return
    cred = _load_credentials()
    if cred is None:
        firebase_admin.initialize_app()
        logger.info("Firebase initialized using application default credentials")
    else:
        firebase_admin.initialize_app(cred)
        logger.info("Firebase initialized using service account credentials")
