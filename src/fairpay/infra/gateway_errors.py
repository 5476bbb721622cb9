"""Classification of text-only failures from the relayer/gateway SDK.

The gateway frequently reports state through free-form error messages.
This module is the only place that inspects that text; everything
downstream works with the structured FairPayError kinds.
"""

from __future__ import annotations

import logging

from fairpay.domain.errors import (
    DecryptionTransientError,
    FairPayError,
    LedgerRejectedError,
    NetworkError,
    NotMarkedForDecryptionError,
)

logger = logging.getLogger(__name__)

# Ordered: first row whose needle occurs in the lower-cased message wins.
CLASSIFICATION_TABLE: tuple[tuple[tuple[str, ...], type[FairPayError]], ...] = (
    (
        ("not marked", "not allowed for public decryption", "not publicly decryptable"),
        NotMarkedForDecryptionError,
    ),
    (
        ("not ready", "not available", "not decryptable", "pending", "processing", "wait"),
        DecryptionTransientError,
    ),
    (
        ("revert",),
        LedgerRejectedError,
    ),
    (
        ("network", "gateway", "timed out", "timeout", "fetch", "connection", "econn"),
        NetworkError,
    ),
)


def _revert_reason(message: str) -> str | None:
    marker = "reverted:"
    idx = message.lower().find(marker)
    if idx == -1:
        return None
    return message[idx + len(marker):].strip() or None


def classify_gateway_error(message: str) -> FairPayError:
    """Map a gateway/SDK error message to a classified error.

    Unrecognised messages are treated as transport failures.
    """
    text = (message or "").lower()
    for needles, error_cls in CLASSIFICATION_TABLE:
        if any(needle in text for needle in needles):
            if error_cls is LedgerRejectedError:
                return LedgerRejectedError(message, reason=_revert_reason(message))
            return error_cls(message)

    logger.debug("Unclassified gateway error, treating as network failure: %s", message)
    return NetworkError(message)
