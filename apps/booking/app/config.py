import os

from barber_otp import env_bool, env_int, env_list
from barber_otp.env_loader import ensure_loaded

ensure_loaded()


class Settings:
    ENV: str = os.getenv("ENV", "dev")
    DEV_MODE: bool = ENV.lower() == "dev"
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = env_int("APP_PORT", default=5000)
    ALLOWED_ORIGINS: list[str] = env_list(
        "ALLOWED_ORIGINS",
        default=["*"] if DEV_MODE else [],
    )
    # OTP engine settings (SMS_MODE, OTP_TTL_MINUTES, ...) are read by barber_otp.otp.from_env.
    # Echo the code back in /api/send-otp responses; honoured only when ENV=dev.
    OTP_EXPOSE_DEV_CODE: bool = env_bool("OTP_EXPOSE_DEV_CODE", default=False)
    OTP_SWEEP_INTERVAL_SECS: int = env_int("OTP_SWEEP_INTERVAL_SECS", default=300)


settings = Settings()
