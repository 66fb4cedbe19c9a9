"""
E-mail delivery through the ``DocumentMailer`` collaborator.

Shared by invoices, estimates and payment reminders.  Delivery never
raises: the document's state change has already been committed, so a
mailer failure is reported in the returned ``DeliveryResult``.
"""

from __future__ import annotations

from typing import Any, Sequence

from billing_kernel.logging_config import get_logger
from billing_services.collaborators import DeliveryResult, DocumentMailer

logger = get_logger("modules.delivery")


def deliver_document(
    mailer: DocumentMailer | None,
    document: Any,
    *,
    document_type: str,
    subject: str,
    message: str,
    cc_emails: Sequence[str] = (),
) -> DeliveryResult:
    if mailer is None:
        logger.debug(f"{document_type}_email_skipped", extra={"document_id": str(document.id)})
        return DeliveryResult(email_sent=False)

    try:
        delivery = mailer.send(document, subject, message, tuple(cc_emails))
    except Exception as e:
        logger.warning(
            f"{document_type}_email_failed",
            extra={"document_id": str(document.id), "error": str(e)},
            exc_info=True,
        )
        return DeliveryResult(email_sent=False, email_error=str(e))

    if delivery.email_sent:
        logger.info(f"{document_type}_email_sent", extra={
            "document_id": str(document.id),
            "cc_count": len(cc_emails),
        })
    else:
        logger.warning(f"{document_type}_email_failed", extra={
            "document_id": str(document.id),
            "error": delivery.email_error,
        })
    return delivery
