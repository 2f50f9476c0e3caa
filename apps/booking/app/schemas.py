from typing import Optional

from pydantic import BaseModel, field_validator


class SendOtpIn(BaseModel):
    phone: str = ""


class SendOtpOut(BaseModel):
    message: str
    sid: str
    status: str
    dev_code: Optional[str] = None


class VerifyOtpIn(BaseModel):
    phone: str = ""
    code: str = ""

    @field_validator("code", mode="before")
    @classmethod
    def numeric_code(cls, v):
        # JSON clients sometimes send the code as a number, losing leading zeros.
        if isinstance(v, int) and not isinstance(v, bool) and v >= 0:
            return f"{v:06d}"
        return v


class VerifyOtpOut(BaseModel):
    message: str
    status: str


class SendConfirmationIn(BaseModel):
    phone: str = ""
    customer_name: Optional[str] = None
    barber_name: str = ""
    services: str = ""
    date: str = ""
    time: str = ""


class SendConfirmationOut(BaseModel):
    message: str
    sid: str
    status: str

