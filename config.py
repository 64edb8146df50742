import os

from dotenv import load_dotenv

# Load env vars (.env in the working directory, if any)
load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///data/calm_capital.db"


class Config:
    """
    Flat settings read from the environment.
    `from_env()` returns a dict that can be passed straight to app.config.
    """

    @staticmethod
    def from_env():
        return {
            "DATABASE_URL": os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            "OPENAI_API_KEY": os.getenv("OPENAI_API_KEY"),
            "OPENAI_MODEL": os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY", "dev-key-change-later"),
            "CORS_ORIGINS": os.getenv("CORS_ORIGINS", "http://localhost:3000"),
            "STRIPE_SECRET_KEY": os.getenv("STRIPE_SECRET_KEY"),
            "STRIPE_WEBHOOK_SECRET": os.getenv("STRIPE_WEBHOOK_SECRET"),
            "STRIPE_PRICE_IDS": os.getenv("STRIPE_PRICE_IDS", ""),
            "APP_URL": os.getenv("APP_URL", "http://localhost:3000").rstrip("/"),
            "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
            "TYPING_INTERVAL_MS": int(os.getenv("TYPING_INTERVAL_MS", "15")),
        }


def environment_status(config):
    return {
        "has_openai": bool(config.get("OPENAI_API_KEY")),
        "has_database": bool(config.get("DATABASE_URL")),
        "has_stripe": bool(config.get("STRIPE_SECRET_KEY")),
    }
