"""Kernel services: infrastructure shared by every billing module."""

from billing_kernel.services.sequence_service import (
    DocumentSequence,
    SequenceService,
    format_document_number,
)

__all__ = ["DocumentSequence", "SequenceService", "format_document_number"]
