# services/api/core/email_sender.py
from __future__ import annotations
import aiosmtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.mime.application import MIMEApplication
from typing import Any, List, Dict, Optional, Tuple
import logging

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

_MIME_BY_EXT = {
    ".pdf": "application/pdf",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def clean_copies(
    to_email: str,
    cc_emails: Optional[List[str]] = None,
    bcc_emails: Optional[List[str]] = None,
) -> Tuple[List[str], List[str]]:
    """
    Trim, de-duplicate and drop anything already addressed:
    CC never repeats TO, BCC never repeats TO or CC.
    """
    to_lower = to_email.strip().lower()
    clean_cc = sorted(
        {
            addr.strip()
            for addr in (cc_emails or [])
            if addr and addr.strip() and addr.strip().lower() != to_lower
        }
    )

    seen = {to_lower, *(a.lower() for a in clean_cc)}
    tmp = []
    for addr in bcc_emails or []:
        if not addr or not addr.strip():
            continue
        a = addr.strip()
        if a.lower() in seen:
            continue
        seen.add(a.lower())
        tmp.append(a)
    return clean_cc, sorted(set(tmp))


def build_message(
    *,
    to_email: str,
    subject: str,
    body_html: str,
    attachments: List[Dict[str, Any]],  # [{"filename": "x.pdf", "data": b"...", "mime_type": optional}]
    from_email: str,
    from_name: str,
    cc_emails: List[str],
) -> MIMEMultipart:
    msg = MIMEMultipart()
    msg['From'] = f"{from_name} <{from_email}>"
    msg['To'] = to_email
    msg['Subject'] = subject
    # BCC is never written to headers
    if cc_emails:
        msg["Cc"] = ", ".join(cc_emails)

    msg.attach(MIMEText(body_html, 'html'))

    for att in attachments:
        filename = att.get("filename", "attachment")
        data = att.get("data", b"")
        ext = filename[filename.rfind('.'):].lower() if '.' in filename else ''
        mime_type = att.get("mime_type") or _MIME_BY_EXT.get(ext, 'application/octet-stream')

        part = MIMEApplication(data, _subtype=mime_type.split('/')[-1])
        part.add_header('Content-Disposition', f'attachment; filename="{filename}"')
        msg.attach(part)
    return msg


async def send_email_with_attachments(
    *,
    to_email: str,
    subject: str,
    body_html: str,
    attachments: List[Dict[str, Any]],
    smtp_host: str,
    smtp_port: int,
    smtp_user: str,
    smtp_password: str,
    from_email: str,
    from_name: str,
    cc_emails: Optional[List[str]] = None,
    bcc_emails: Optional[List[str]] = None,
    retry_attempts: int = 3,
) -> bool:
    """
    Send email with attachments over SMTP (STARTTLS), retrying transient
    SMTP/network errors with exponential backoff.
    Returns True on success, False on failure.
    """
    try:
        clean_cc, clean_bcc = clean_copies(to_email, cc_emails, bcc_emails)
        msg = build_message(
            to_email=to_email,
            subject=subject,
            body_html=body_html,
            attachments=attachments,
            from_email=from_email,
            from_name=from_name,
            cc_emails=clean_cc,
        )

        # envelope recipients carry BCC
        recipients = [to_email] + clean_cc + clean_bcc

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, retry_attempts)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type((aiosmtplib.SMTPException, OSError)),
            reraise=True,
        ):
            with attempt:
                await aiosmtplib.send(
                    msg,
                    hostname=smtp_host,
                    port=smtp_port,
                    username=smtp_user or None,
                    password=smtp_password or None,
                    start_tls=True,
                    recipients=recipients,
                )

        logger.info(f"✓ Email sent to {to_email} with {len(attachments)} attachments")
        return True

    except Exception as e:
        logger.error(f"✗ Email send failed to {to_email}: {e}")
        return False
