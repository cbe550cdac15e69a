"""Three-way confirmation gate for destructive variant pruning."""

from __future__ import annotations

import logging

from product_importer.core.errors import PruneConfirmationRequired, PruningDisabled

logger = logging.getLogger(__name__)

CONFIRM_HEADER = "X-Confirm-Prune"
CONFIRM_HEADER_VALUE = "yes"
CONFIRM_TOKEN_FIELD = "prune_confirm_token"
CONFIRM_TOKEN_VALUE = "PRUNE_VARIANTS"

REQUIRED_CONFIRMATIONS = {
    "header": f"{CONFIRM_HEADER}: {CONFIRM_HEADER_VALUE}",
    "body": f'{CONFIRM_TOKEN_FIELD}: "{CONFIRM_TOKEN_VALUE}"',
}


def check_prune_gate(
    force_prune: bool,
    *,
    pruning_enabled: bool,
    confirm_header: str | None,
    confirm_token: str | None,
) -> None:
    """Allow pruning only when policy, header and token all agree.

    Raises ``PruningDisabled`` when the operator policy forbids pruning, and
    ``PruneConfirmationRequired`` when either confirmation is missing. Both
    confirmations are compared literally.
    """
    if not force_prune:
        return

    if not pruning_enabled:
        logger.warning("Rejected prune request: pruning is disabled by configuration")
        raise PruningDisabled(
            "Pruning feature is globally disabled",
            details={"setting": "IMPORT_ENABLE_PRUNING"},
        )

    missing = []
    if confirm_header != CONFIRM_HEADER_VALUE:
        missing.append(CONFIRM_HEADER)
    if confirm_token != CONFIRM_TOKEN_VALUE:
        missing.append(CONFIRM_TOKEN_FIELD)
    if missing:
        logger.warning(f"Rejected prune request: missing confirmation {missing}")
        raise PruneConfirmationRequired(
            "Destructive operation requires confirmation",
            details={"missing": missing, "required": dict(REQUIRED_CONFIRMATIONS)},
        )
