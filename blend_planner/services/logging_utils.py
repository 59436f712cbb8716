"""Service layer logging utilities.

Provides structured logging functions for service operations, enabling
consistent log format and context across the batch store and blend ledger.

Usage:
    from blend_planner.services.logging_utils import get_service_logger, log_operation

    logger = get_service_logger(__name__)

    # Log successful operation
    log_operation(
        logger,
        operation="commit_blend",
        outcome="success",
        blend_id=12,
        lot_number="HG-2510-MFI-19001-4",
    )

    # Log a skipped batch during reversal
    log_operation(
        logger,
        operation="release_batch",
        outcome="reassigned",
        level=logging.WARNING,
        batch_id=45,
    )
"""

import logging
from typing import Any


def get_service_logger(name: str) -> logging.Logger:
    """
    Get a logger configured for service operations.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Logger instance with the 'blend_planner.services' prefix.

    Example:
        >>> logger = get_service_logger(__name__)
        >>> logger.name
        'blend_planner.services.blend_service'
    """
    if "." in name:
        name = name.split(".")[-1]
    return logging.getLogger(f"blend_planner.services.{name}")


def log_operation(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Log a service operation with structured context.

    The context is passed via the 'extra' parameter for structured logging.

    Args:
        logger: Logger instance to use
        operation: Operation name (e.g., "commit_blend", "delete_blend")
        outcome: Outcome description (e.g., "success", "expired_window")
        level: Log level (default: INFO). Use DEBUG for verbose/frequent logs.
        **context: Additional context fields (entity IDs, error details, etc.)
            Common fields:
            - blend_id: ID of the blend
            - lot_number: Lot identifier
            - batch_id / batch_numbers: Batches involved
            - error: Error message if outcome is "error"
    """
    extra = {
        "operation": operation,
        "outcome": outcome,
        **context,
    }
    logger.log(level, f"{operation}: {outcome}", extra=extra)
