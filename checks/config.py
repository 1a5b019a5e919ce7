# checks/config.py

"""
Runtime settings for MailSentry.

Defaults live in module constants; ``Settings.from_env()`` overrides them
from ``MAILSENTRY_*`` environment variables.
"""

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger("mailsentry.config")

ENV_PREFIX = "MAILSENTRY_"

DEFAULT_DB_DIR = os.path.expanduser("~/.mailsentry")
DEFAULT_DB_PATH = os.path.join(DEFAULT_DB_DIR, "mailsentry.db")
DEFAULT_REPORT_DIR = os.path.join(DEFAULT_DB_DIR, "dmarc-reports")

# Zone -> weight. Spamhaus/SpamCop are high-threat, Barracuda/SORBS medium.
DEFAULT_BLACKLISTS = {
    "zen.spamhaus.org": 5.0,
    "bl.spamcop.net": 5.0,
    "b.barracudacentral.org": 3.0,
    "dnsbl.sorbs.net": 3.0,
    "psbl.surriel.com": 2.0,
    "ubl.unsubscore.com": 2.0,
    "dnsbl-1.uceprotect.net": 2.0,
    "dnsbl-2.uceprotect.net": 2.0,
    "dnsbl-3.uceprotect.net": 2.0,
    "sbl.spamhaus.org": 5.0,
    "css.spamhaus.org": 5.0,
    "xbl.spamhaus.org": 5.0,
    "dul.dnsbl.sorbs.net": 3.0,
    "http.dnsbl.sorbs.net": 3.0,
    "misc.dnsbl.sorbs.net": 3.0,
    "smtp.dnsbl.sorbs.net": 3.0,
    "spam.dnsbl.sorbs.net": 3.0,
    "web.dnsbl.sorbs.net": 3.0,
    "zombie.dnsbl.sorbs.net": 3.0,
}


def _env_bool(value):
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(value):
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_weights(value):
    """Parse ``zone=weight,zone=weight``; a bare zone keeps its default weight (None)."""
    weights = {}
    for item in _env_list(value):
        if "=" in item:
            zone, weight = item.split("=", 1)
            weights[zone.strip().lower()] = float(weight)
        else:
            weights[item.lower()] = None
    return weights


@dataclass
class Settings:
    """All recognised options, with their defaults."""

    # Validation
    validation_enabled: bool = True
    strict_mode: bool = False
    dns_timeout: float = 5.0
    nameservers: list = field(default_factory=list)

    # DNSBL
    dnsbl_enabled: bool = True
    dnsbl_timeout: float = 5.0
    dnsbl_max_concurrent: int = 10
    dnsbl_batch_delay: float = 0.1
    dnsbl_default_lists: dict = field(default_factory=lambda: dict(DEFAULT_BLACKLISTS))

    # DMARC aggregate reporting
    dmarc_report_enabled: bool = True
    dmarc_org_name: str = "Secure Email System"
    dmarc_contact_email: str = "postmaster@example.com"
    dmarc_storage_path: str = DEFAULT_REPORT_DIR
    dmarc_generation_interval_hours: int = 24
    dmarc_retention_days: int = 90
    dmarc_max_send_attempts: int = 5
    dmarc_report_domains: list = field(default_factory=list)
    dmarc_malformed_as_permerror: bool = False

    # Storage and delivery
    db_path: str = DEFAULT_DB_PATH
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_starttls: bool = False

    _CONVERTERS = {
        bool: _env_bool,
        int: int,
        float: float,
        str: str,
        list: _env_list,
        dict: _env_weights,
    }

    @classmethod
    def from_env(cls, environ=None):
        """Build settings from ``MAILSENTRY_<OPTION>`` variables."""
        environ = os.environ if environ is None else environ
        settings = cls()
        for name, current in vars(settings).items():
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            convert = cls._CONVERTERS.get(type(current), str)
            try:
                setattr(settings, name, convert(raw))
            except ValueError:
                logger.warning("Ignoring invalid value for %s%s: %r", ENV_PREFIX, name.upper(), raw)
        return settings
