from .errors import (
    OTPError,
    InvalidPhoneFormat,
    OTPRateLimitError,
    DispatchError,
    DispatchConfigError,
    DispatchRejectedError,
    InvalidDispatchMode,
    InvalidStoreBackend,
    StatusLookupError,
)
from .otp import (
    OTPConfig,
    OTPService,
    IssuedChallenge,
    VerificationResult,
    ChallengeIssuer,
    ChallengeVerifier,
    generate_otp_code,
    hash_code,
    from_env as otp_config_from_env,
)
from .sms_provider import (
    OP_SEND_OTP,
    OP_SEND_CONFIRMATION,
    DispatchAck,
    DispatchRequest,
    DispatchModePolicy,
    SmsConfig,
    SmsDispatcher,
    sms_config_from_env,
)
from .store import ChallengeRecord, InMemoryChallengeStore, LockTimeout, RedisChallengeStore, SystemClock
from .throttle import Admission, ThrottlePolicy
from .env import env_bool, env_int, env_list
from .phone_utils import normalize_phone_e164, mask_phone

__all__ = [
    "OTPError",
    "InvalidPhoneFormat",
    "OTPRateLimitError",
    "DispatchError",
    "DispatchConfigError",
    "DispatchRejectedError",
    "InvalidDispatchMode",
    "InvalidStoreBackend",
    "StatusLookupError",
    "LockTimeout",
    "OTPConfig",
    "OTPService",
    "IssuedChallenge",
    "VerificationResult",
    "ChallengeIssuer",
    "ChallengeVerifier",
    "generate_otp_code",
    "hash_code",
    "otp_config_from_env",
    "OP_SEND_OTP",
    "OP_SEND_CONFIRMATION",
    "DispatchAck",
    "DispatchRequest",
    "DispatchModePolicy",
    "SmsConfig",
    "SmsDispatcher",
    "sms_config_from_env",
    "ChallengeRecord",
    "InMemoryChallengeStore",
    "RedisChallengeStore",
    "SystemClock",
    "Admission",
    "ThrottlePolicy",
    "env_bool",
    "env_int",
    "env_list",
    "normalize_phone_e164",
    "mask_phone",
]
