from pydantic import BaseModel
from typing import Dict, Any, Optional

# Fields are optional at the schema level: a missing field is reported by the
# route as a 400 with a specific message, not as a 422 from validation.


class SendVerificationRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class VerifyCodeRequest(BaseModel):
    email: Optional[str] = None
    code: Optional[str] = None


class RegisterStartRequest(BaseModel):
    email: Optional[str] = None
    userName: Optional[str] = None


class RegisterFinishRequest(BaseModel):
    email: Optional[str] = None
    credential: Optional[Dict[str, Any]] = None
    deviceName: Optional[str] = None


class LoginStartRequest(BaseModel):
    email: Optional[str] = None


class LoginFinishRequest(BaseModel):
    email: Optional[str] = None
    credential: Optional[Dict[str, Any]] = None
    ceremonyId: Optional[str] = None


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()
