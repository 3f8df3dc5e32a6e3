"""
Emergency rollback to the pre-migration snapshot.
"""

from __future__ import annotations

import logging

from usermigration.database.interface import MigrationDatabase
from usermigration.exceptions import classify_exception
from usermigration.observability import Tracer, create_tracer, traced

logger = logging.getLogger(__name__)


class RollbackController:
    """
    Restores the database to the state captured before the backfill.

    A failed rollback is logged at CRITICAL and reported through the return
    value; it is never raised, because it runs while another error is
    already being handled.

    Args:
        database: Storage backend
        tracer: Optional tracer
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        database: MigrationDatabase,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @traced("usermigration.rollback.rollback")
    async def rollback(self) -> bool:
        """
        Run the emergency rollback.

        Returns:
            True if the database reported success.
        """
        logger.warning("Executing emergency rollback")
        try:
            await self._database.emergency_rollback()
        except Exception as e:
            classification = classify_exception(e)
            logger.critical(
                "Emergency rollback failed [code=%s]: %s. Manual intervention required: %s",
                classification.error_code,
                e,
                classification.suggested_action,
                exc_info=True,
            )
            return False

        logger.info("Emergency rollback completed")
        return True


__all__ = ["RollbackController"]
