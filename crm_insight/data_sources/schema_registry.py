"""
Schema Registry for the CRM query planner.

Holds the current DatabaseSchema snapshot and refreshes it out-of-band.
Readers take one snapshot per request; a refresh builds a new snapshot
and swaps the reference, so in-flight validations never observe a
half-refreshed schema.
"""

import logging
import threading
from datetime import datetime
from typing import Optional

from .introspectors import SchemaIntrospectionError, SchemaIntrospector
from .schema_types import DatabaseSchema

logger = logging.getLogger(__name__)


class SchemaRegistry:
    """
    Read-mostly registry of the live database schema.

    Example:
        ```python
        registry = SchemaRegistry(SQLiteIntrospector("crm.db"))
        registry.start_auto_refresh(300)
        schema = registry.get_schema()
        ```
    """

    def __init__(self, introspector: SchemaIntrospector):
        self._introspector = introspector
        self._snapshot: Optional[DatabaseSchema] = None
        self._last_refreshed: Optional[datetime] = None
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._refresh_interval: Optional[float] = None

    @property
    def last_refreshed(self) -> Optional[datetime]:
        return self._last_refreshed

    def get_schema(self) -> DatabaseSchema:
        """
        Return the current schema snapshot, loading it on first use.

        Raises:
            SchemaIntrospectionError: If no snapshot exists and loading fails.
        """
        snapshot = self._snapshot
        if snapshot is None:
            snapshot = self.refresh_schema()
        return snapshot

    def refresh_schema(self) -> DatabaseSchema:
        """
        Re-introspect the data source and swap in the new snapshot.

        On failure the previous snapshot stays in place; the error is only
        raised when there is nothing to fall back to.
        """
        try:
            snapshot = self._introspector.introspect()
        except SchemaIntrospectionError as e:
            logger.error(f"Schema refresh failed: {e}")
            if self._snapshot is None:
                raise
            return self._snapshot

        with self._lock:
            self._snapshot = snapshot
            self._last_refreshed = datetime.now()

        fk_tables = sum(1 for t in snapshot.tables.values() if t.foreign_keys)
        logger.info(
            f"Schema synchronized: {len(snapshot.tables)} tables, "
            f"{len(snapshot.relationships)} relationships, "
            f"{fk_tables} tables with foreign keys"
        )
        return snapshot

    def start_auto_refresh(self, interval_seconds: float) -> None:
        """Refresh the schema every ``interval_seconds`` on a daemon timer."""
        self._refresh_interval = interval_seconds
        self._schedule_next()
        logger.info(f"Schema auto-refresh every {interval_seconds:.0f}s")

    def stop_auto_refresh(self) -> None:
        with self._lock:
            self._refresh_interval = None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule_next(self) -> None:
        with self._lock:
            if self._refresh_interval is None:
                return
            self._timer = threading.Timer(self._refresh_interval, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def _on_timer(self) -> None:
        logger.debug("Running scheduled schema sync")
        try:
            self.refresh_schema()
        except SchemaIntrospectionError:
            pass  # already logged, next tick retries
        except Exception as e:
            logger.error(f"Scheduled schema sync failed: {str(e)}", exc_info=True)
        finally:
            self._schedule_next()
