# relaybot/db_connection.py
import logging
import os
from typing import Optional

from google.auth import default as google_auth_default
from google.cloud import secretmanager
from google.oauth2 import service_account
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from relaybot.entities import Base

logger = logging.getLogger("relaybot_store")

PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "")


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def get_db_password() -> str:
    password = os.environ.get("DB_PASSWORD")
    if password:
        return password

    secret_id = os.environ.get("DB_SECRET_ID")
    if secret_id:
        client = secretmanager.SecretManagerServiceClient(credentials=_build_creds())
        name = client.secret_version_path(PROJECT_ID, secret_id, "latest")
        resp = client.access_secret_version(request={"name": name})
        return resp.payload.data.decode("utf-8")

    raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")


def _redact(url: str) -> str:
    # hide the password between "user:" and "@"
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest:
        return url
    creds, _, host = rest.rpartition("@")
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"


def get_db_engine(url: Optional[str] = None) -> Engine:
    url = url or os.getenv("DATABASE_URL", "")

    if url:
        logger.info("[DB] Using DATABASE_URL: %s", _redact(url))
        if url.startswith("sqlite"):
            # store calls hop between threads via asyncio.to_thread
            return create_engine(url, connect_args={"check_same_thread": False})
        return create_engine(url, pool_pre_ping=True)

    host = os.environ.get("DB_HOST", "localhost")
    port = int(os.environ.get("DB_PORT", "5432"))
    name = os.environ.get("DB_NAME", "relaybot")
    user = os.environ.get("DB_USER", "postgres")
    url = f"postgresql+pg8000://{user}:{get_db_password()}@{host}:{port}/{name}"
    logger.info("[DB] Connecting to Postgres URL: %s", _redact(url))

    # pg8000 supports 'timeout' in seconds
    return create_engine(url, connect_args={"timeout": 10}, pool_pre_ping=True)


def create_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    return sessionmaker(bind=engine or get_db_engine())


def init_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)
