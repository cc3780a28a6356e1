from __future__ import annotations

from pydantic import BaseModel, Field


class RemoteEntryOut(BaseModel):
    name: str
    path_lower: str
    size: int = 0
    server_modified: str | None = None
    needs_transcode: bool = False


class RemoteListing(BaseModel):
    path: str
    order: str
    folders: list[RemoteEntryOut] = Field(default_factory=list)
    files: list[RemoteEntryOut] = Field(default_factory=list)


class RemoteTokenRequest(BaseModel):
    access_token: str = Field(min_length=1)
