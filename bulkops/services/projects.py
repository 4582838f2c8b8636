# services/projects.py

"""
Project (tenant) credential lookup
"""

import json
import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from bulkops.core.errors import ProjectNotFoundError
from bulkops.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

PROJECTS_KEY = "projects"


class Project(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(..., alias="siteId")
    api_key: str = Field(..., alias="apiKey")
    name: Optional[str] = None


class ProjectRegistry:
    """Reads the ``projects`` list kept in the key-value store."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def list_projects(self) -> List[Project]:
        raw = await self.store.get(PROJECTS_KEY)
        if not raw:
            return []
        return [Project.model_validate(p) for p in json.loads(raw)]

    async def resolve(self, site_id: str) -> Project:
        for project in await self.list_projects():
            if project.site_id == site_id:
                return project
        logger.warning(f"No project configuration for siteId: {site_id}")
        raise ProjectNotFoundError(site_id)
