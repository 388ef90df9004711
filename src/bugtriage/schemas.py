"""Pydantic schemas for API requests and responses"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class NotifyRequest(BaseModel):
    """An error report from a client library.

    Required fields are checked by the ingestion pipeline rather than here,
    so that a report missing several fields is rejected with all of them named.
    Unknown fields (request data, user data, device metadata) are kept.
    """

    model_config = ConfigDict(extra="allow")

    api_key: Optional[str] = Field(None, description="API key of the reporting project")
    environment: Optional[str] = Field(None, description="Environment name, created on first sight")
    client: Optional[str] = Field(None, description="Client library identifier")
    revision: Optional[str] = Field(None, description="Commit the reporting code runs")
    build: Optional[str] = Field(None, description="Build identifier of a distributed client")
    class_name: Optional[str] = Field(None, description="Exception class")
    message: Optional[str] = Field(None, description="Exception message")
    occurred_at: Optional[Union[datetime, float, str]] = Field(None, description="ISO 8601 time or epoch seconds")
    backtraces: Optional[List[Dict[str, Any]]] = Field(
        None, description="[{name, faulted, backtrace: [frame, ...]}, ...]"
    )
    parent_exceptions: Optional[List[Dict[str, Any]]] = Field(None, description="Causes of the exception")

    def to_report(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class NotifyResponse(BaseModel):
    occurrence_id: int
    bug_id: int


class ProjectRef(BaseModel):
    api_key: str


class EnvironmentRef(BaseModel):
    name: str


class DeployAttributes(BaseModel):
    revision: str = Field(..., description="Deployed commit (any ref the repository resolves)")
    build: Optional[str] = None
    version: Optional[str] = None
    hostname: Optional[str] = None
    deployed_at: Optional[datetime] = None


class DeployRequest(BaseModel):
    """Notification that a revision was deployed to an environment"""

    project: ProjectRef
    environment: EnvironmentRef
    deploy: DeployAttributes


class DeployResponse(BaseModel):
    deploy_id: int
    fixes_deployed: int = Field(..., description="Bugs whose fix shipped with this deploy")


class ErrorResponse(BaseModel):
    """Body of every error answer"""

    detail: str
    type: str
    retryable: bool = False
    error_id: Optional[str] = Field(None, description="Reference into the server log for unexpected failures")
