"""
REST API schemas

Request and response models of the agent's local HTTP surface. Field
names on the wire are camelCase.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ExecuteRequest(CamelModel):
    """Direct load-test submission"""
    script_id: Optional[str] = Field(default=None, alias="scriptId")
    script_content: Optional[str] = Field(default=None, alias="scriptContent")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")
    timeout: Optional[str] = Field(default=None, description="Duration string such as 30s or 5m")


class ExecuteResponse(CamelModel):
    task_id: str = Field(alias="taskId")
    status: str = "pending"
    message: str = "Task created, execution started"


class TaskStatusResponse(CamelModel):
    """Snapshot of one task"""
    id: str
    status: str
    start_time: str = Field(alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")
    progress: float
    logs: List[str] = Field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    script_id: str = Field(default="", alias="scriptId")
    parameters: Dict[str, Any] = Field(default_factory=dict)


class StopResponse(CamelModel):
    task_id: str = Field(alias="taskId")
    status: str
    message: str


class InfoResponse(CamelModel):
    agent_id: str = Field(alias="agentId")
    hostname: str
    version: str
    status: str = "online"
    registered: bool
    total_tasks: int = Field(alias="totalTasks")
    running_tasks: int = Field(alias="runningTasks")
    timestamp: str
    capabilities: List[str]
    resources: Dict[str, int]
    tags: Dict[str, str]


class HealthResponse(BaseModel):
    """Liveness check"""
    status: str = "ok"
    timestamp: str


class ErrorResponse(BaseModel):
    error: str
    message: str
    detail: Optional[str] = None
