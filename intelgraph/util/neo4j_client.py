import logging
import os
import random
import time
import warnings
from typing import Dict, List, Optional

from dotenv import load_dotenv
from neo4j import GraphDatabase
from neo4j.exceptions import ServiceUnavailable, SessionExpired, TransientError

from intelgraph.util.errors import DatastoreUnavailableError

load_dotenv()

logger = logging.getLogger(__name__)

# Suppress Neo4j "property does not exist" warnings (harmless on empty DBs)
warnings.filterwarnings("ignore", message=".*property.*does not exist.*")


class Neo4jClient:
    def __init__(self, uri: Optional[str] = None, username: Optional[str] = None, password: Optional[str] = None):
        uri = uri or os.getenv("NEO4J_URI")
        username = username or os.getenv("NEO4J_USERNAME")
        password = password or os.getenv("NEO4J_PASSWORD")

        if not all([uri, username, password]):
            raise ValueError("Missing Neo4j credentials in .env")

        self._uri = uri
        self._auth = (username, password)
        self._max_retries = int(os.getenv("NEO4J_MAX_RETRIES", "5"))
        self._retry_base_seconds = float(os.getenv("NEO4J_RETRY_BASE_SECONDS", "2.0"))
        self._retry_max_seconds = float(os.getenv("NEO4J_RETRY_MAX_SECONDS", "30"))

        self.driver = GraphDatabase.driver(self._uri, auth=self._auth)

    def close(self):
        self.driver.close()

    def _reconnect(self):
        """Force a new driver/connection pool."""
        try:
            self.driver.close()
        finally:
            self.driver = GraphDatabase.driver(self._uri, auth=self._auth)

    def query(self, cypher: str, params: Optional[Dict] = None) -> List[Dict]:
        """Executes a Cypher query and returns the result."""
        params = params or {}
        max_retries = max(self._max_retries, 0)

        for attempt in range(max_retries + 1):
            try:
                with self.driver.session() as session:
                    result = session.run(cypher, params)
                    return [record.data() for record in result]
            except (SessionExpired, ServiceUnavailable, TransientError) as e:
                if attempt >= max_retries:
                    raise
                # Reconnect on dropped/defunct connections.
                if isinstance(e, (SessionExpired, ServiceUnavailable)):
                    self._reconnect()
                sleep_for = min(self._retry_base_seconds * (2 ** attempt), self._retry_max_seconds)
                # Add jitter to avoid thundering herd retries.
                sleep_for *= 0.5 + (random.random() * 0.5)
                logger.warning(f"Neo4j {type(e).__name__}, retry {attempt + 1}/{max_retries} in {sleep_for:.1f}s")
                time.sleep(sleep_for)
        return []

    def verify_connectivity(self) -> None:
        """Raise DatastoreUnavailableError when the database cannot be reached."""
        try:
            self.driver.verify_connectivity()
        except Exception as e:
            raise DatastoreUnavailableError(f"Failed to connect to Neo4j at {self._uri}: {e}") from e
        logger.info("Connected to Neo4j")

    def warmup(self, max_attempts: Optional[int] = None, wait_seconds: Optional[float] = None) -> bool:
        """
        Wake up a sleeping Neo4j Aura instance and ensure connection is ready.
        Aura free tier can take 30-60s to wake from sleep.
        """
        max_attempts = max_attempts or int(os.getenv("NEO4J_WARMUP_ATTEMPTS", "6"))
        wait_seconds = wait_seconds if wait_seconds is not None else float(os.getenv("NEO4J_WARMUP_WAIT_SECONDS", "5"))
        for attempt in range(max_attempts):
            try:
                self._reconnect()
                self.driver.verify_connectivity()
                return True
            except (ServiceUnavailable, SessionExpired, TransientError) as e:
                if attempt < max_attempts - 1:
                    logger.info(f"Neo4j warmup attempt {attempt + 1}/{max_attempts} failed, waiting {wait_seconds}s...")
                    time.sleep(wait_seconds)
                else:
                    raise DatastoreUnavailableError(f"Neo4j warmup failed after {max_attempts} attempts: {e}") from e
        return False
