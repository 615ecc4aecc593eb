from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError


# ----------------------------
# Config & Constants
# ----------------------------
CURRENCY_VND = "VND"
PAYMENT_METHOD_MOMO = "MOMO"

# mock credentials: only meaningful together with PAYMENT_GATEWAY=mock
MOCK_PARTNER_CODE = "MOMOMOCK"
MOCK_ACCESS_KEY = "mock-access-key"
MOCK_SECRET = "supersecret"

_MOMO_KEYS = (
    ("MOMO_PARTNER_CODE", "momo_partner_code"),
    ("MOMO_ACCESS_KEY", "momo_access_key"),
    ("MOMO_SECRET_KEY", "momo_secret_key"),
    ("MOMO_CREATE_URL", "momo_create_url"),
    ("MOMO_REDIRECT_URL", "momo_redirect_url"),
    ("MOMO_IPN_URL", "momo_ipn_url"),
)


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./coursepay.db"
    # transactions in flight per process; None: the connection pool size
    db_gate_limit: Optional[int] = None
    gateway: str = "mock"  # 'momo' | 'mock'

    momo_partner_code: str = MOCK_PARTNER_CODE
    momo_access_key: str = MOCK_ACCESS_KEY
    momo_secret_key: str = MOCK_SECRET
    momo_create_url: str = ""
    momo_redirect_url: str = "http://localhost:8000/orders/momo/return"
    momo_ipn_url: str = "http://localhost:8000/orders/momo/ipn"
    momo_request_type: str = "captureWallet"
    momo_lang: str = "vi"
    momo_timeout: float = 15.0

    # result-code contract, owned by the gateway
    success_code: int = 0
    cancelled_code: int = 1006

    # when False the return endpoint only reports, the IPN alone mutates
    return_applies: bool = True

    frontend_success_url: Optional[str] = None
    frontend_fail_url: Optional[str] = None

    currency: str = CURRENCY_VND
    payment_method: str = PAYMENT_METHOD_MOMO
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        gateway = env.get("PAYMENT_GATEWAY", "mock").lower()
        if gateway not in ("momo", "mock"):
            raise ConfigError(f"unknown PAYMENT_GATEWAY: {gateway}")

        kw = {}
        if gateway == "momo":
            missing = [name for name, _ in _MOMO_KEYS if not env.get(name)]
            if missing:
                raise ConfigError(
                    "MoMo configuration is incomplete. Missing: "
                    + ", ".join(missing)
                )
            kw = {attr: env[name] for name, attr in _MOMO_KEYS}
        else:
            for name, attr in _MOMO_KEYS:
                if env.get(name):
                    kw[attr] = env[name]

        gate_limit = env.get("DB_GATE_LIMIT")
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            db_gate_limit=int(gate_limit) if gate_limit else None,
            gateway=gateway,
            momo_request_type=env.get(
                "MOMO_REQUEST_TYPE", cls.momo_request_type
            ),
            momo_lang=env.get("MOMO_LANG", cls.momo_lang),
            momo_timeout=float(env.get("MOMO_TIMEOUT", cls.momo_timeout)),
            success_code=int(env.get("MOMO_SUCCESS_CODE", cls.success_code)),
            cancelled_code=int(
                env.get("MOMO_CANCELLED_CODE", cls.cancelled_code)
            ),
            return_applies=_flag(env.get("MOMO_RETURN_APPLIES"), True),
            frontend_success_url=env.get("FRONTEND_SUCCESS_URL") or None,
            frontend_fail_url=env.get("FRONTEND_FAIL_URL") or None,
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
            **kw,
        )

    @property
    def redirects_to_frontend(self) -> bool:
        return bool(self.frontend_success_url and self.frontend_fail_url)
