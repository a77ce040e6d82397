"""Connection models shared by the channel registry, the gateway and the agent bridge."""

from __future__ import annotations

from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Fingerprint(NamedTuple):
    """(host, port, username) key identifying one remote target/credential pair."""
    host: str
    port: int
    username: str

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port, "username": self.username}


class ConnectionSpec(BaseModel):
    """
    Connection block carried by `execute-command` frames.

    Exactly one of `password` / `sshKey` must be supplied. `useSshKey`, when
    present, must agree with the material that was actually sent.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    host: str = Field(..., min_length=1, max_length=255)
    port: int = Field(22, ge=1, le=65535)
    username: str = Field(..., min_length=1, max_length=128)
    password: Optional[str] = None
    ssh_key: Optional[str] = Field(None, alias="sshKey")
    use_ssh_key: Optional[bool] = Field(None, alias="useSshKey")

    @field_validator("host", "username")
    @classmethod
    def strip_identity(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("password", "ssh_key")
    @classmethod
    def blank_as_missing(cls, v: Optional[str]) -> Optional[str]:
        # Dashboard forms send "" for untouched credential fields
        if v is None or not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def exactly_one_auth(self) -> "ConnectionSpec":
        if self.password and self.ssh_key:
            raise ValueError("supply either password or sshKey, not both")
        if not self.password and not self.ssh_key:
            raise ValueError("one of password or sshKey is required")
        if self.use_ssh_key is True and not self.ssh_key:
            raise ValueError("useSshKey is set but no sshKey was supplied")
        if self.use_ssh_key is False and not self.password:
            raise ValueError("useSshKey is false but no password was supplied")
        return self

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.host, self.port, self.username)

    def __repr__(self) -> str:
        # Credentials never reach logs
        auth = "key" if self.ssh_key else "password"
        return f"ConnectionSpec({self.fingerprint}, auth={auth})"

    __str__ = __repr__


class FingerprintSpec(BaseModel):
    """Credential-free connection reference (resize targets, agent sessions)."""
    model_config = ConfigDict(extra="ignore")

    host: str = Field(..., min_length=1)
    port: int = Field(22, ge=1, le=65535)
    username: str = Field(..., min_length=1)

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.host.strip(), self.port, self.username.strip())
