"""Client factories for the services the cluster exposes.

Postgres goes through psycopg2, ZooKeeper through kazoo and the schema
registry through a small httpx client. Each probe here is used purely to
decide readiness; the returned objects are the live handles tests use.
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Iterable
from typing import Any

import httpx
import psycopg2
from kazoo.client import KazooClient

from cdc_testcluster.services import POSTGRES_USER

logger = logging.getLogger(__name__)


class PostgresClient:
    """Opens connections to the cluster's Postgres service."""

    def __init__(self, user: str = POSTGRES_USER, dbname: str = "postgres", connect_timeout: int = 2) -> None:
        self.user = user
        self.dbname = dbname
        self.connect_timeout = connect_timeout

    def ping(self, host: str, port: int) -> bool:
        """True if the server accepts a connection right now."""
        try:
            conn = psycopg2.connect(
                host=host,
                port=port,
                user=self.user,
                dbname=self.dbname,
                connect_timeout=self.connect_timeout,
            )
        except psycopg2.OperationalError as exc:
            logger.debug("postgres.ping_failed", extra={"host": host, "port": port, "error": str(exc)})
            return False
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        finally:
            conn.close()
        return True

    def connect(self, host: str, port: int) -> Any:
        """Open an autocommit connection."""
        conn = psycopg2.connect(host=host, port=port, user=self.user, dbname=self.dbname)
        conn.autocommit = True
        return conn

    @staticmethod
    def ensure_extensions(conn: Any, extensions: Iterable[str]) -> None:
        with conn.cursor() as cur:
            for extension in extensions:
                cur.execute(f"CREATE EXTENSION IF NOT EXISTS {extension}")


def connect_zookeeper(hostport: str, timeout: float = 10.0) -> KazooClient:
    """Start a kazoo client connected to ``host:port``."""
    client = KazooClient(hosts=hostport, timeout=timeout)
    client.start(timeout=timeout)
    return client


def close_zookeeper(client: KazooClient) -> None:
    client.stop()
    client.close()


def tcp_port_open(host: str, port: int, timeout: float = 2.0) -> bool:
    """Open and immediately close a TCP connection.

    Raises ``OSError`` (e.g. connection refused) when nothing listens yet.
    """
    with socket.create_connection((host, port), timeout=timeout):
        return True


class SchemaRegistryClient:
    """Minimal Confluent schema registry client.

    Example::

        registry = SchemaRegistryClient("http://localhost:32768")
        registry.subjects()   # ['users-value', ...]
    """

    def __init__(self, base_url: str, timeout: float = 5.0, transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def subjects(self) -> list[str]:
        """List registered subjects."""
        resp = self._client.get("/subjects")
        resp.raise_for_status()
        return resp.json()

    def close(self) -> None:
        self._client.close()
