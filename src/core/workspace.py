from dataclasses import dataclass, field
from typing import List, Optional

from core.errors import WorkspaceContextError


@dataclass(frozen=True)
class WorkspaceContext:
    """
    Brand facts used to personalise scoring and drafting.
    """
    id: int
    name: str
    description: str = ""
    audience: str = ""
    brand_voice: str = "professional and helpful"
    domain: str = ""
    keywords: List[str] = field(default_factory=list)

    def validate(self) -> "WorkspaceContext":
        if not self.name or not self.name.strip():
            raise WorkspaceContextError(f"Workspace {self.id} has no company name")
        if not self.description and not self.keywords:
            raise WorkspaceContextError(
                f"Workspace {self.id} needs a description or keywords to score against"
            )
        return self


@dataclass(frozen=True)
class WorkspaceCredential:
    """
    Opaque refresh credential for the content source.
    """
    workspace_id: int
    refresh_token: str
    source: str = "reddit"
    account_name: Optional[str] = None

    def __repr__(self) -> str:
        return f"WorkspaceCredential(workspace_id={self.workspace_id}, source={self.source!r})"
