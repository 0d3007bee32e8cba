# =============================================================================
# SMTP Module
# =============================================================================
# Handles sending emails via SMTP (Simple Mail Transfer Protocol).
#
# Features:
#   - Connection with SSL/STARTTLS
#   - Message composition (reply, reply-all, forward)
#   - MIME message building (text, HTML, attachments)
#   - Submission with retry and a stored sent copy
# =============================================================================

from kestrel.smtp.client import SMTPClient, map_smtp_error
from kestrel.smtp.compose import (
    build_mime_message,
    create_forward,
    create_reply,
    generate_message_id,
)
from kestrel.smtp.dispatcher import DispatchResult, MessageDispatcher

__all__ = [
    # Client
    "SMTPClient",
    "map_smtp_error",
    # Composition
    "build_mime_message",
    "create_forward",
    "create_reply",
    "generate_message_id",
    # Dispatch
    "DispatchResult",
    "MessageDispatcher",
]
