from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str
    remote_linked: bool = False


class VersionResponse(BaseModel):
    name: str
    version: str
    git_sha: str
    build_time: str
