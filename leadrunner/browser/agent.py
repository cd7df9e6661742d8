"""
Request/response channel to the agent script injected into each surface.

The agent exposes ``window[AGENT_GLOBAL].dispatch(action, payload)`` which
resolves to ``{success, data, error}``.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError

from leadrunner.api.config import AppConfig
from leadrunner.core.error_handler import AgentError, SurfaceLost
from leadrunner.core.models import AgentResponse, Lead

logger = logging.getLogger(__name__)

DISPATCH_JS = """
async ([name, action, payload]) => {
    const agent = window[name];
    if (!agent || typeof agent.dispatch !== 'function') {
        return { success: false, error: 'Page agent not loaded' };
    }
    return await agent.dispatch(action, payload);
}
"""


class PageAgent:
    def __init__(self, surfaces, config: AppConfig, timeout: float = 60.0):
        self.surfaces = surfaces
        self.config = config
        self.timeout = timeout

    async def dispatch(self, surface_id: str, action: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Send one message to the agent and return its ``data``; raises AgentError on failure."""
        page = await self.surfaces.page_for(surface_id)
        try:
            raw = await asyncio.wait_for(
                page.evaluate(DISPATCH_JS, [self.config.AGENT_GLOBAL, action, payload or {}]),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise AgentError(f"{action} timed out after {self.timeout:.0f}s") from e
        except PlaywrightError as e:
            if page.is_closed():
                raise SurfaceLost(f"Surface {surface_id} closed during {action}") from e
            raise AgentError(f"{action} failed: {e}") from e

        response = AgentResponse.from_raw(raw)
        if not response.success:
            raise AgentError(response.error or f"{action} failed")
        return response.data

    async def extract_profile(self, surface_id: str, deep: bool = False) -> Dict[str, Any]:
        data = await self.dispatch(surface_id, "extractProfile", {"deep": deep})
        if not data:
            raise AgentError("No profile data extracted")
        return data

    async def perform_automation(
        self,
        surface_id: str,
        automation_type: str,
        config: Dict[str, Any],
        lead: Lead,
    ) -> Any:
        return await self.dispatch(surface_id, "performAutomation", {
            "automationType": automation_type,
            "config": config,
            "lead": lead.to_dict(),
        })

    async def perform_enrichment(self, surface_id: str) -> Dict[str, Any]:
        return await self.dispatch(surface_id, "performEnrichment") or {}

    async def enrich_profile(self, surface_id: str, username: str) -> Dict[str, Any]:
        """Profile counters and contact fields for ``username`` as shown on the open profile page."""
        data = await self.dispatch(surface_id, "enrichProfile", {"username": username})
        profile = data.get("profile", data) if isinstance(data, dict) else None
        if not profile:
            raise AgentError(f"No profile data extracted for {username}")
        return profile

    async def perform_search(self, surface_id: str, keyword: str) -> Any:
        return await self.dispatch(surface_id, "performSearch", {"keyword": keyword})

    async def get_post_links(self, surface_id: str, limit: int) -> List[str]:
        data = await self.dispatch(surface_id, "getPostLinks", {"limit": limit})
        links = data.get("links") if isinstance(data, dict) else data
        return [link for link in (links or []) if isinstance(link, str)][:limit]

    async def extract_author_from_post(self, surface_id: str) -> Optional[Dict[str, Any]]:
        data = await self.dispatch(surface_id, "extractAuthorFromPost")
        return data or None
