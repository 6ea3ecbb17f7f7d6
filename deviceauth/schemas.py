from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CliStartResponse(CamelModel):
    device_code: str
    user_code: str
    verification_url: str
    expires_in: int
    interval: int


class CliPollRequest(CamelModel):
    device_code: str = Field(min_length=1, max_length=256)
    device_name: str | None = Field(default=None, max_length=255)
    device_fingerprint: str | None = Field(default=None, max_length=64)


class CliPollResponse(CamelModel):
    status: Literal["pending", "slow_down", "expired", "ok"]
    interval: int | None = None
    access_token: str | None = None
    expires_in: int | None = None


class CliVerifyRequest(CamelModel):
    user_code: str = Field(min_length=1, max_length=32)


class OkResponse(CamelModel):
    ok: bool


class CliTokenRead(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    label: str | None
    device_name: str | None
    origin_address: str | None
    last_used_at: datetime | None
    created_at: datetime
    expires_at: datetime
    revoked_at: datetime | None


class CliTokenListResponse(CamelModel):
    tokens: list[CliTokenRead]


class CliTokenRenameRequest(CamelModel):
    name: str = Field(min_length=1, max_length=255)


class RefreshRequest(CamelModel):
    refresh_token: str | None = None


class MeResponse(CamelModel):
    id: int
    email: str | None
    name: str | None
    picture: str | None
    via: Literal["session", "cli"]
