"""
Managed Container Model
Tracks a single runtime container owned by the ContainerManager.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ContainerStatus(str, Enum):
    LAUNCHING = "launching"
    RUNNING = "running"
    EXITED = "exited"
    REMOVED = "removed"
    NOT_FOUND = "not_found"


class MountSpec(BaseModel):
    source: str
    target: str
    read_only: bool = True


class ManagedContainer(BaseModel):
    container_id: str
    name: str
    unit_id: str = ""
    image: str
    mounts: list[MountSpec] = Field(default_factory=list)
    status: ContainerStatus = ContainerStatus.LAUNCHING
    artifact_dir: Optional[str] = None
    launched_at: float = 0.0
