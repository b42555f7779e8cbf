import re
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from phoneauth.core.utils import E164_RE
from phoneauth.services.sessions import DeviceInfo

_PHONE_SEPARATORS_RE = re.compile(r"[\s\-().]")


def normalize_phone_number(value: str) -> str:
    phone = _PHONE_SEPARATORS_RE.sub("", value or "")
    if not E164_RE.match(phone):
        raise ValueError("Phone number must be in E.164 format, e.g. +919876543210")
    return phone


class SendOtpIn(BaseModel):
    phone_number: str

    @field_validator("phone_number")
    @classmethod
    def validate_phone_number(cls, value: str) -> str:
        return normalize_phone_number(value)


class DeviceInfoIn(BaseModel):
    device_id: str | None = Field(default=None, max_length=255)
    device_name: str | None = Field(default=None, max_length=255)
    platform: Literal["web", "android", "ios"] = "web"

    def to_device(self) -> DeviceInfo:
        return DeviceInfo(device_id=self.device_id, device_name=self.device_name, platform=self.platform)


class VerifyOtpIn(BaseModel):
    phone_number: str
    otp: str = Field(pattern=r"^\d{6}$")
    device_info: DeviceInfoIn | None = None

    @field_validator("phone_number")
    @classmethod
    def validate_phone_number(cls, value: str) -> str:
        return normalize_phone_number(value)


class RefreshTokenIn(BaseModel):
    refresh_token: str = Field(min_length=1)


class LogoutIn(BaseModel):
    refresh_token: str | None = None
    all_devices: bool = False
