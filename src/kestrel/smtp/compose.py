# =============================================================================
# Message Composition
# =============================================================================
# Builds outgoing messages: replies and forwards from stored messages, and
# the final MIME structure handed to the SMTP client.
#
# MIME layout:
#   - text only            -> text/plain
#   - text + html          -> multipart/alternative
#   - anything + files     -> multipart/mixed (body first, then files)
# =============================================================================

import logging
from email.encoders import encode_base64
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid

from kestrel import __app_name__, __version__
from kestrel.core import Account, Message, OutgoingAttachment, OutgoingMessage

logger = logging.getLogger(__name__)

FORWARD_SEPARATOR = "---------- Forwarded message ----------"


def generate_message_id(account: Account) -> str:
    """A fresh Message-ID in the account's mail domain."""
    return make_msgid(domain=account.email_domain or None)


def build_mime_message(account: Account, outgoing: OutgoingMessage) -> MIMEText | MIMEMultipart:
    """
    Build a MIME message from an outgoing message.

    The outgoing message must already carry its Message-ID; building the
    same message twice yields the same identity.

    Returns:
        MIME message ready to submit.
    """
    if not outgoing.message_id:
        raise ValueError("Outgoing message has no Message-ID")

    has_html = bool(outgoing.body_html)

    if has_html:
        body: MIMEText | MIMEMultipart = MIMEMultipart("alternative")
        body.attach(MIMEText(outgoing.body_text, "plain", "utf-8"))
        body.attach(MIMEText(outgoing.body_html, "html", "utf-8"))
    else:
        body = MIMEText(outgoing.body_text, "plain", "utf-8")

    if outgoing.attachments:
        msg: MIMEText | MIMEMultipart = MIMEMultipart("mixed")
        msg.attach(body)
        for attachment in outgoing.attachments:
            msg.attach(_attachment_part(attachment))
    else:
        msg = body

    msg["From"] = formataddr((account.display_name, account.email))
    if outgoing.to:
        msg["To"] = ", ".join(outgoing.to)
    if outgoing.cc:
        msg["Cc"] = ", ".join(outgoing.cc)
    # Bcc stays in the envelope only
    msg["Subject"] = outgoing.subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = outgoing.message_id

    # Threading headers
    if outgoing.in_reply_to:
        msg["In-Reply-To"] = outgoing.in_reply_to
    if outgoing.references:
        msg["References"] = " ".join(outgoing.references)

    msg["X-Mailer"] = f"{__app_name__.capitalize()} {__version__}"
    return msg


def _attachment_part(attachment: OutgoingAttachment) -> MIMEBase:
    maintype, _, subtype = attachment.content_type.partition("/")
    part = MIMEBase(maintype or "application", subtype or "octet-stream")
    part.set_payload(attachment.data)
    encode_base64(part)
    part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
    return part


# =============================================================================
# Replies and Forwards
# =============================================================================

def _prefixed_subject(subject: str, prefix: str) -> str:
    subject = subject or ""
    if subject.lower().startswith(prefix.lower()):
        return subject
    return f"{prefix} {subject}".rstrip()


def thread_references(original: Message) -> list[str]:
    """References for a message answering `original`: its chain plus its own id."""
    references = list(original.references)
    if not references and original.in_reply_to:
        references.append(original.in_reply_to)
    if original.message_id and original.message_id not in references:
        references.append(original.message_id)
    return references


def _dedupe(to: list[str], cc: list[str]) -> tuple[list[str], list[str]]:
    """Drop repeated addresses, case-insensitively; To wins over Cc."""
    seen: set[str] = set()
    result: tuple[list[str], list[str]] = ([], [])
    for target, addresses in zip(result, (to, cc)):
        for address in addresses:
            if address and address.lower() not in seen:
                seen.add(address.lower())
                target.append(address)
    return result


def _date_label(original: Message) -> str:
    return original.date_sent.strftime("%Y-%m-%d %H:%M") if original.date_sent else "unknown date"


def quote_body(original: Message) -> str:
    """The original text, attributed and prefixed with '> '."""
    quote_header = f"On {_date_label(original)}, {original.display_sender} wrote:\n"
    quoted = "".join(f"> {line}\n" for line in (original.body_text or "").split("\n"))
    return quote_header + quoted


def create_reply(
    account: Account,
    original: Message,
    body: str,
    *,
    html_body: str | None = None,
    reply_all: bool = False,
) -> OutgoingMessage:
    """
    Create a reply to a stored message.

    A reply to a message the account sent itself is addressed to that
    message's recipients rather than back to the account.

    Args:
        account: Account the reply is sent from.
        original: The message being replied to.
        body: New text, placed above the quoted original.
        html_body: Optional HTML alternative.
        reply_all: If True, keep the other To and Cc recipients.

    Returns:
        OutgoingMessage addressed and threaded under the original.
    """
    our_email = account.email.lower()
    if original.reply_to:
        to = list(original.reply_to)
    elif original.sender.lower() == our_email and original.recipients:
        # Our own message: go back to the people it was sent to
        to = list(original.recipients)
    else:
        to = [original.sender]
    cc: list[str] = []

    if reply_all:
        # Original To recipients stay in To (except ourselves)
        for recipient in original.recipients:
            if recipient.lower() != our_email:
                to.append(recipient)
        # Original CC recipients stay in CC (except ourselves)
        for recipient in original.cc:
            if recipient.lower() != our_email:
                cc.append(recipient)

    to, cc = _dedupe(to, cc)

    return OutgoingMessage(
        to=to,
        cc=cc,
        subject=_prefixed_subject(original.subject, "Re:"),
        body_text=f"{body}\n\n{quote_body(original)}" if body else quote_body(original),
        body_html=html_body,
        in_reply_to=original.message_id or None,
        references=thread_references(original),
    )


def create_forward(
    original: Message,
    recipients: list[str],
    body: str = "",
    *,
    attachments: list[OutgoingAttachment] | None = None,
) -> OutgoingMessage:
    """
    Create a forward of a stored message.

    Args:
        original: The message being forwarded.
        recipients: Who to forward it to.
        body: Optional note placed above the forwarded block.
        attachments: Files to carry along, usually the original's.

    Returns:
        OutgoingMessage ready to send.
    """
    forward_header = (
        f"{FORWARD_SEPARATOR}\n"
        f"From: {original.formatted_sender}\n"
        f"Date: {_date_label(original)}\n"
        f"Subject: {original.subject}\n"
        f"To: {', '.join(original.recipients)}\n"
    )
    if original.cc:
        forward_header += f"Cc: {', '.join(original.cc)}\n"
    forward_header += "\n"

    text = forward_header + (original.body_text or "")
    if body:
        text = f"{body}\n\n{text}"

    return OutgoingMessage(
        to=list(recipients),
        subject=_prefixed_subject(original.subject, "Fwd:"),
        body_text=text,
        attachments=list(attachments or []),
        in_reply_to=original.message_id or None,
        references=thread_references(original),
    )
