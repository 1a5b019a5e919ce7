# checks/delivery.py

import logging
import os
import smtplib
from email.message import EmailMessage

logger = logging.getLogger("mailsentry.delivery")


class SMTPDelivery:
    """Sends report mail with one file attachment through an SMTP relay."""

    def __init__(self, host="localhost", port=25, username="", password="", starttls=False, timeout=30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings):
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            starttls=settings.smtp_starttls,
        )

    def build_message(self, from_addr, to_addr, subject, body, file_path, content_type):
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = to_addr
        msg.set_content(body)

        maintype, _, subtype = content_type.partition("/")
        with open(file_path, "rb") as f:
            msg.add_attachment(
                f.read(),
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=os.path.basename(file_path),
            )
        return msg

    def send_with_attachment(self, from_addr, to_addr, subject, body, file_path, content_type):
        """Returns True when the relay accepted the message, False otherwise."""
        try:
            msg = self.build_message(from_addr, to_addr, subject, body, file_path, content_type)
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.starttls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                refused = server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending mail to %s via %s:%s: %s", to_addr, self.host, self.port, e)
            return False
        if refused:
            logger.warning("Relay refused recipients %s", ", ".join(refused))
            return False
        logger.info("Sent '%s' to %s", subject, to_addr)
        return True
