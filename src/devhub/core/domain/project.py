"""Project-level request and result types."""

from pydantic import BaseModel

from devhub.core.domain.sync import SyncResult


class ProjectInfo(BaseModel):
    """How to install and run a project's dev server."""

    type: str = "node"
    install_command: str | None = "npm install"
    start_command: str = "npm run dev"
    port: int = 3000
    description: str | None = None


class PreviewResult(BaseModel):
    project_id: str
    instance_id: str
    preview_url: str
    port: int
    project_type: str
    installed: bool
    synced_count: int
    repaired_count: int


class CloneResult(BaseModel):
    project_id: str
    owner: str
    repo: str
    branch: str
    files_count: int
    saved_count: int
    failed_count: int
    elapsed_ms: int
    sync: SyncResult | None = None


class ReconcileResult(BaseModel):
    adopted: int = 0
    stale_removed: int = 0
    watched: int = 0


class ActiveSession(BaseModel):
    project_id: str
    instance_id: str
    endpoint: str
    created_at: float
    last_used: float
    idle_seconds: float
