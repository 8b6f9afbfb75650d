"""Neo4j record store for ingested SPL sections and their dependent records."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from neo4j import GraphDatabase, Session
from neo4j.exceptions import Neo4jError

from splingest.storage.schemas import EntityKind, Record
from splingest.utils.config import DatabaseConfig
from splingest.utils.errors import PersistenceError

logger = logging.getLogger(__name__)

_PROPERTY_NAME_CHARS = set("abcdefghijklmnopqrstuvwxyz0123456789_")

# Creates one node per row and returns the element id with the row index, so
# callers can realign results even though Cypher makes no ordering promise.
_BATCH_CREATE = """
UNWIND range(0, size($rows) - 1) AS idx
WITH idx, $rows[idx] AS row
CREATE (n:{label})
SET n = row
RETURN idx, elementId(n) AS id
ORDER BY idx
"""

# Hierarchy rows also get a HAS_CHILD relationship between the two sections.
_BATCH_CREATE_HIERARCHY = """
UNWIND range(0, size($rows) - 1) AS idx
WITH idx, $rows[idx] AS row
CREATE (n:SectionHierarchy)
SET n = row
WITH idx, n, row
OPTIONAL MATCH (p:Section) WHERE elementId(p) = row.parent_section_id
OPTIONAL MATCH (c:Section) WHERE elementId(c) = row.child_section_id
FOREACH (_ IN CASE WHEN p IS NOT NULL AND c IS NOT NULL THEN [1] ELSE [] END |
    MERGE (p)-[r:HAS_CHILD]->(c)
    SET r.sequence_number = row.sequence_number
)
RETURN idx, elementId(n) AS id
ORDER BY idx
"""


class Neo4jManager:
    """Neo4j-backed record store.

    Each :class:`EntityKind` maps to a node label; records are nodes carrying
    their properties plus ``scope``. Inside :meth:`unit_of_work` every call
    runs on one explicit transaction.

    Attributes:
        uri: Neo4j connection URI
        user: Neo4j username
        password: Neo4j password
        database: Neo4j database name
        driver: Neo4j driver instance
    """

    def __init__(self, config: DatabaseConfig):
        """Initialize Neo4j manager with configuration.

        Args:
            config: Database configuration
        """
        self.uri = config.neo4j_uri
        self.user = config.neo4j_user
        self.password = config.neo4j_password
        self.database = config.neo4j_database
        self.max_pool_size = config.neo4j_max_pool_size
        self.driver = None
        self._connected = False
        self._tx = None

    def connect(self) -> None:
        """Establish connection to Neo4j database.

        Raises:
            Neo4jError: If connection fails
        """
        try:
            self.driver = GraphDatabase.driver(
                self.uri,
                auth=(self.user, self.password),
                max_connection_pool_size=self.max_pool_size,
            )
            # Verify connectivity
            self.driver.verify_connectivity()
            self._connected = True
            logger.info(f"Connected to Neo4j at {self.uri}")
        except Neo4jError as e:
            logger.error(f"Failed to connect to Neo4j: {e}")
            raise

    def close(self) -> None:
        """Close connection to Neo4j database."""
        if self.driver:
            self.driver.close()
            self._connected = False
            logger.info("Closed Neo4j connection")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for Neo4j session.

        Yields:
            Neo4j session instance

        Raises:
            RuntimeError: If not connected to database
        """
        if not self._connected or not self.driver:
            raise RuntimeError("Not connected to Neo4j. Call connect() first.")

        session = self.driver.session(database=self.database)
        try:
            yield session
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create indexes used by scoped lookups.

        Creates a ``scope`` index for every record label, plus a lookup index on
        section GUIDs.
        """
        with self.session() as session:
            for kind in EntityKind:
                try:
                    session.run(
                        f"CREATE INDEX {kind.value}_scope IF NOT EXISTS "
                        f"FOR (n:{kind.label}) ON (n.scope)"
                    )
                    logger.info(f"Created scope index for {kind.label}")
                except Neo4jError as e:
                    logger.warning(f"Could not create scope index for {kind.label}: {e}")

            try:
                session.run(
                    "CREATE INDEX section_guid IF NOT EXISTS FOR (n:Section) ON (n.section_guid)"
                )
            except Neo4jError as e:
                logger.warning(f"Could not create section_guid index: {e}")

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        """Run the enclosed calls on one transaction.

        Commits on normal exit and rolls back on any exception. Nested calls
        join the outer transaction.
        """
        if self._tx is not None:
            yield
            return

        with self.session() as session:
            tx = session.begin_transaction()
            self._tx = tx
            try:
                yield
                tx.commit()
            except BaseException:
                tx.rollback()
                logger.warning("Rolled back Neo4j unit of work")
                raise
            finally:
                self._tx = None
                tx.close()

    def _run(self, query: str, parameters: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            if self._tx is not None:
                return self._tx.run(query, parameters).data()
            with self.session() as session:
                return session.run(query, parameters).data()
        except Neo4jError as e:
            raise PersistenceError(f"Neo4j query failed: {e}") from e

    @staticmethod
    def _check_property_name(name: str) -> str:
        if not name or not set(name) <= _PROPERTY_NAME_CHARS:
            raise ValueError(f"Unsupported filter property: {name!r}")
        return name

    def query(self, kind: EntityKind, filters: Mapping[str, Any]) -> List[Record]:
        """Return records of ``kind`` matching property equality ``filters``.

        ``filters`` must contain ``scope``.
        """
        if "scope" not in filters:
            raise ValueError("Record queries must be scoped")

        clauses = []
        params: Dict[str, Any] = {}
        for i, (name, value) in enumerate(sorted(filters.items())):
            clauses.append(f"n.{self._check_property_name(name)} = $p{i}")
            params[f"p{i}"] = value

        rows = self._run(
            f"MATCH (n:{kind.label}) WHERE {' AND '.join(clauses)} "
            "RETURN elementId(n) AS id, properties(n) AS props",
            params,
        )
        records = []
        for row in rows:
            props = dict(row["props"])
            scope = props.pop("scope")
            records.append(Record(kind=kind, scope=scope, properties=props, id=row["id"]))
        return records

    def batch_insert(self, kind: EntityKind, records: Sequence[Record]) -> List[Record]:
        """Create one node per record in a single round-trip.

        Returns:
            The records with ``id`` set to the node element id, in input order
        """
        if not records:
            return []

        template = (
            _BATCH_CREATE_HIERARCHY
            if kind is EntityKind.SECTION_HIERARCHY
            else _BATCH_CREATE.format(label=kind.label)
        )
        rows = self._run(template, {"rows": [r.to_neo4j_dict() for r in records]})

        ids: List[Optional[str]] = [None] * len(records)
        for row in rows:
            ids[row["idx"]] = row["id"]

        return [r if record_id is None else r.with_id(record_id) for r, record_id in zip(records, ids)]

    def delete_scope(self, scope: str) -> int:
        """Delete every record node (and its relationships) in ``scope``."""
        removed = 0
        for kind in EntityKind:
            rows = self._run(
                f"MATCH (n:{kind.label}) WHERE n.scope = $scope "
                "DETACH DELETE n RETURN count(n) AS removed",
                {"scope": scope},
            )
            removed += rows[0]["removed"] if rows else 0
        logger.info(f"Deleted {removed} records in scope {scope}")
        return removed

    def count(self, kind: EntityKind, scope: str | None = None) -> int:
        if scope is None:
            rows = self._run(f"MATCH (n:{kind.label}) RETURN count(n) AS total", {})
        else:
            rows = self._run(
                f"MATCH (n:{kind.label}) WHERE n.scope = $scope RETURN count(n) AS total",
                {"scope": scope},
            )
        return rows[0]["total"] if rows else 0

    def health_check(self) -> bool:
        """Check if Neo4j connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            with self.session() as session:
                result = session.run("RETURN 1")
                return result.single() is not None
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    def get_statistics(self) -> Dict[str, int]:
        """Get database statistics.

        Returns:
            Dictionary with record counts per kind
        """
        return {kind.value: self.count(kind) for kind in EntityKind}
