import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType

from dotenv import load_dotenv

# --- Collection Catalogue ---
# Every collection the store document carries, in the order they are written.
COLLECTIONS = (
    "hostels",
    "users",
    "tenants",
    "rooms",
    "payments",
    "complaints",
    "staff",
    "expenses",
    "notices",
    "hostelRequests",
    "checkoutRequests",
    "hostelSettings",
    "supportTickets",
)

# Collections partitioned by hostelId. Everything else is global.
HOSTEL_SCOPED = frozenset({
    "tenants",
    "rooms",
    "payments",
    "complaints",
    "staff",
    "expenses",
    "notices",
    "checkoutRequests",
    "hostelSettings",
})

ROLES = ("master_admin", "admin", "receptionist", "staff", "tenant")


@dataclass(frozen=True)
class UniqueRule:
    fields: tuple
    scope: str  # "global" | "hostel"


# Built once at import, read-only afterwards.
UNIQUE_RULES = MappingProxyType({
    "users": UniqueRule(("email",), "global"),
    "hostels": UniqueRule(("name",), "global"),
    "hostelRequests": UniqueRule(("email",), "global"),
    "tenants": UniqueRule(("email", "phone", "aadharNumber"), "hostel"),
    "rooms": UniqueRule(("roomNumber",), "hostel"),
    "staff": UniqueRule(("phone", "email"), "hostel"),
})


# --- Settings ---
def _split_csv(value: str | None) -> tuple:
    if not value:
        return ()
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    data_file: str = "hostel_data.json"
    jwt_secret_key: str = "dev-secret"
    access_token_expire_minutes: int = 60 * 24
    credential_key: str | None = None
    credential_ttl_seconds: int = 15 * 60
    allowed_login_domains: tuple = field(default_factory=tuple)
    max_failed_logins: int = 5
    email_tld: str = "com"
    notification_timeout: float = 5.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Builds settings from the process environment, reading a .env file first."""
        load_dotenv()
        return cls(
            data_file=os.getenv("HOSTEL_DATA_FILE", cls.data_file),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", cls.jwt_secret_key),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", cls.access_token_expire_minutes)),
            credential_key=os.getenv("CREDENTIAL_KEY"),
            credential_ttl_seconds=int(os.getenv("CREDENTIAL_TTL_SECONDS", cls.credential_ttl_seconds)),
            allowed_login_domains=_split_csv(os.getenv("ALLOWED_LOGIN_DOMAINS")),
            max_failed_logins=int(os.getenv("MAX_FAILED_LOGINS", cls.max_failed_logins)),
            email_tld=os.getenv("EMAIL_TLD", cls.email_tld),
            notification_timeout=float(os.getenv("NOTIFICATION_TIMEOUT", cls.notification_timeout)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )


# --- Logging ---
def configure_logging(level: str = "INFO"):
    """Configures root logging once; later calls only adjust the level."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level.upper())
