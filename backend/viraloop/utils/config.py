"""
Configuration management.

Values are read from environment variables once at import time (after
``.env`` has been loaded by python-dotenv) and exposed through the
module-level ``config`` object:

    from viraloop.utils.config import config, EnvMode

    if config.ENV_MODE == EnvMode.LOCAL:
        ...
"""

import os
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


class EnvMode(Enum):
    LOCAL = "local"
    STAGING = "staging"
    PRODUCTION = "production"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Configuration:
    # Stripe sandbox price ids, used when the environment does not override them
    _DEFAULT_PRICE_IDS = {
        "STRIPE_TRIAL_PRICE_ID": "price_1T0LcRKoeqMlLw1bfOWgJr9K",
        "STRIPE_GROWTH_MONTHLY_PRICE_ID": "price_1T0LpMKoeqMlLw1bqdJRoFRd",
        "STRIPE_GROWTH_ANNUAL_PRICE_ID": "price_1T0LpMKoeqMlLw1bUBRPjkLy",
        "STRIPE_PRO_MONTHLY_PRICE_ID": "price_1T0LqAKoeqMlLw1b5BymHdqi",
        "STRIPE_PRO_ANNUAL_PRICE_ID": "price_1T0LqAKoeqMlLw1bXxnpe5p8",
        "STRIPE_ULTRA_MONTHLY_PRICE_ID": "price_1T0LqgKoeqMlLw1brnIN2l0D",
        "STRIPE_ULTRA_ANNUAL_PRICE_ID": "price_1T0LqgKoeqMlLw1bcCY9CYG3",
    }

    def __init__(self):
        self.load()

    def load(self):
        env_mode = os.getenv("ENV_MODE", EnvMode.LOCAL.value).lower()
        try:
            self.ENV_MODE: EnvMode = EnvMode(env_mode)
        except ValueError:
            self.ENV_MODE = EnvMode.LOCAL

        self.DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
        self.DB_AUTO_CREATE: bool = _env_bool("DB_AUTO_CREATE", self.ENV_MODE == EnvMode.LOCAL)
        self.REDIS_URL: Optional[str] = os.getenv("REDIS_URL")

        self.STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY")
        self.STRIPE_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.WEBHOOK_DOMAIN: str = os.getenv("WEBHOOK_DOMAIN", "viraloop.io")

        for name, default in self._DEFAULT_PRICE_IDS.items():
            setattr(self, name, os.getenv(name, default))

        self.GRANT_TRIAL_CREDITS: bool = _env_bool("GRANT_TRIAL_CREDITS", False)
        self.ENABLE_CREDIT_SCHEDULER: bool = _env_bool("ENABLE_CREDIT_SCHEDULER", True)
        self.RECURRING_CREDITS_HOUR_UTC: int = _env_int("RECURRING_CREDITS_HOUR_UTC", 0)
        self.STARTUP_DELAY_SECONDS: int = _env_int("STARTUP_DELAY_SECONDS", 10)

        self.LOGGING_LEVEL: str = os.getenv("LOGGING_LEVEL", "INFO").upper()

    @property
    def is_local(self) -> bool:
        return self.ENV_MODE == EnvMode.LOCAL


config = Configuration()
