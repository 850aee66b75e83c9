from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import psycopg2
import psycopg2.extras
from cryptography.fernet import Fernet, InvalidToken

from pg_transfer.errors import ConnectionResolutionError
from pg_transfer.ImportJob import DESTINATION, SOURCE

LOG = logging.getLogger(__name__)

AUTH_PASSWORD = "password"
AUTH_INTEGRATED = "integrated"


@dataclass(frozen=True)
class ConnectionEndpoint:
    server: str
    database: str
    auth_mode: str = AUTH_PASSWORD
    user: str = ""
    password: str = ""      # decrypted
    port: Optional[int] = None

    def connect_kwargs(self) -> dict:
        kwargs = {"host": self.server, "dbname": self.database}
        if self.port:
            kwargs["port"] = self.port
        if self.user:
            kwargs["user"] = self.user
        if self.auth_mode != AUTH_INTEGRATED and self.password:
            kwargs["password"] = self.password
        return kwargs

    def __repr__(self) -> str:
        return (
            f"ConnectionEndpoint(server={self.server!r}, port={self.port!r}, database={self.database!r}, "
            f"auth_mode={self.auth_mode!r}, user={self.user!r}, password='********')"
        )


# ============================== Credentials ===============================

class CredentialCipher:
    """Symmetric encrypt/decrypt of stored connection secrets (Fernet tokens)."""

    def __init__(self, key: str | bytes):
        if not key:
            raise ValueError("An encryption key is required to decrypt connection credentials")
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, plain: str) -> str:
        if not plain:
            return ""
        return self._fernet.encrypt(plain.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token:
            return ""
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise ConnectionResolutionError("Stored credential could not be decrypted") from e


# ============================== Resolution ===============================

def _split_server(server: str) -> tuple[str, Optional[int]]:
    host, sep, port = server.strip().rpartition(":")
    if sep and port.isdigit() and host:
        return host, int(port)
    return server.strip(), None


_INTEGRATED_NAMES = (AUTH_INTEGRATED, "windows authentication", "trust", "peer")


def is_integrated(auth_mode: Optional[str]) -> bool:
    return (auth_mode or "").strip().lower() in _INTEGRATED_NAMES


def build_endpoint(server: str, database: str, auth_mode: str, user: str, password: str) -> ConnectionEndpoint:
    if not server or not server.strip():
        raise ConnectionResolutionError("Server name cannot be empty")
    if not database or not database.strip():
        raise ConnectionResolutionError("Database name cannot be empty")
    if not (auth_mode or "").strip():
        raise ConnectionResolutionError("Authentication type cannot be empty")
    mode = AUTH_INTEGRATED if is_integrated(auth_mode) else AUTH_PASSWORD
    if mode == AUTH_PASSWORD and not user:
        raise ConnectionResolutionError("Username cannot be empty for password authentication")
    host, port = _split_server(server)
    return ConnectionEndpoint(
        server=host, port=port, database=database.strip(), auth_mode=mode,
        user=user or "", password=password if mode == AUTH_PASSWORD else "",
    )


class ConnectionResolver(ABC):
    @abstractmethod
    def resolve(self, job_id: int, side: str) -> ConnectionEndpoint:
        ...


_RESOLVE_SQL = """
    SELECT
        CASE WHEN %(is_source)s THEN ds.server_name ELSE dd.server_name END AS server_name,
        CASE WHEN %(is_source)s THEN ds.user_name ELSE dd.user_name END AS user_name,
        CASE WHEN %(is_source)s THEN ds.password ELSE dd.password END AS password,
        CASE WHEN %(is_source)s THEN ds.authentication_type ELSE dd.authentication_type END AS authentication_type,
        CASE WHEN %(is_source)s
             THEN COALESCE(NULLIF(i.from_database, ''), ds.default_database_name)
             ELSE COALESCE(NULLIF(i.to_database, ''), dd.default_database_name)
        END AS database_name
    FROM import_data i
    JOIN data_source ds ON ds.data_source_id = i.from_connection_id
    JOIN data_source dd ON dd.data_source_id = i.to_connection_id
    WHERE i.id = %(import_id)s
"""


class PostgresConnectionResolver(ConnectionResolver):
    """Reads connection profiles from the job catalog and decrypts their passwords."""

    def __init__(self, catalog_dsn: str, cipher: CredentialCipher, logger: logging.Logger | None = None):
        self.catalog_dsn = catalog_dsn
        self.cipher = cipher
        self.log = logger or LOG

    def resolve(self, job_id: int, side: str) -> ConnectionEndpoint:
        if side not in (SOURCE, DESTINATION):
            raise ValueError(f"Unknown connection side: {side!r}")
        with open_connection(dsn=self.catalog_dsn) as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as c:
                c.execute(_RESOLVE_SQL, {"is_source": side == SOURCE, "import_id": job_id})
                row = c.fetchone()
        if row is None:
            raise ConnectionResolutionError(f"Import data not found for ID: {job_id}")

        password = ""
        if not is_integrated(row["authentication_type"]):
            password = self.cipher.decrypt(row["password"] or "")
            if not password:
                self.log.warning("Decrypted password is empty for server %s, database %s",
                                 row["server_name"], row["database_name"])
        endpoint = build_endpoint(
            server=row["server_name"], database=row["database_name"],
            auth_mode=row["authentication_type"], user=row["user_name"], password=password,
        )
        self.log.info("Connection info loaded for import_id=%s side=%s: %r", job_id, side, endpoint)
        return endpoint


# ============================== Opening ===============================

@contextmanager
def open_connection(
    endpoint: ConnectionEndpoint | None = None,
    *,
    dsn: str | None = None,
    autocommit: bool = False,
    command_timeout: int | None = None,
    application_name: str = "pg_transfer",
) -> Iterator["psycopg2.extensions.connection"]:
    """Open a psycopg2 connection and always close it on exit."""
    kwargs = {"application_name": application_name, "connect_timeout": 30}
    if command_timeout:
        kwargs["options"] = f"-c statement_timeout={int(command_timeout) * 1000}"
    if endpoint is not None:
        kwargs.update(endpoint.connect_kwargs())
        conn = psycopg2.connect(**kwargs)
    else:
        conn = psycopg2.connect(dsn, **kwargs)
    conn.autocommit = autocommit
    LOG.debug("Opened connection %s (autocommit=%s)", endpoint or "<catalog>", autocommit)
    try:
        yield conn
    finally:
        if not conn.closed:
            conn.close()
