"""
Facades over the upstream REST API used by the orchestrator:
job source, lead persistence and the AI qualification service.
"""

from typing import Any, Dict, List, Optional

from leadrunner.api.client import ApiClient
from leadrunner.api.config import AppConfig
from leadrunner.api.logging_config import logger
from leadrunner.core.error_handler import ApiError, ClaimConflict, TransientNetworkError
from leadrunner.core.models import ActionLog, Analysis, AutomationJob, JobStatus, TerminalStatus


class JobSource:
    def __init__(self, client: ApiClient, config: AppConfig):
        self.client = client
        self.config = config

    async def list_pending_jobs(self) -> List[AutomationJob]:
        response = await self.client.get("/api/v1/automations/jobs")
        if not response or not response.get("success", True):
            return []
        jobs = []
        for item in response.get("data") or []:
            try:
                jobs.append(AutomationJob.from_api(item, self.config.DEFAULT_JOB_INTERVAL))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed job payload: {e}")
        return jobs

    async def claim_job(self, job_id: str) -> None:
        """Flip the remote status to running; the only cross-instance mutual exclusion."""
        try:
            await self.client.patch(f"/api/v1/automations/jobs/{job_id}", {"status": JobStatus.RUNNING.value})
        except (ApiError, TransientNetworkError) as e:
            raise ClaimConflict(f"Could not claim job {job_id}: {e}") from e

    async def report_terminal_status(
        self,
        job_id: str,
        status: TerminalStatus,
        logs: List[ActionLog],
        processed_count: int,
    ) -> None:
        await self.client.patch(f"/api/v1/automations/jobs/{job_id}", {
            "status": status.remote_status.value,
            "result": {
                "logs": [entry.to_dict() for entry in logs],
                "processedCount": processed_count,
                "cancelledByUser": status is TerminalStatus.CANCELLED,
            },
        })


class LeadService:
    def __init__(self, client: ApiClient):
        self.client = client

    async def import_leads(
        self,
        platform: str,
        source_url: Optional[str],
        leads: List[Dict[str, Any]],
        source: str = "extension",
    ) -> Dict[str, Any]:
        response = await self.client.post("/api/v1/leads/import", {
            "source": source,
            "platform": platform,
            "sourceUrl": source_url,
            "leads": leads,
        })
        data = (response or {}).get("data") or {}
        return {"leadResults": data.get("leadResults") or []}

    async def patch_lead(self, lead_id: str, fields: Dict[str, Any]) -> Any:
        return await self.client.patch(f"/api/v1/leads/{lead_id}", fields)

    async def enrich_lead(self, lead_id: str, enrichment: Dict[str, Any]) -> Any:
        return await self.client.patch(f"/api/v1/leads/{lead_id}/enrich", {"enrichment": enrichment})

    async def analyze_deep(self, lead_id: str, profile: Dict[str, Any], posts: List[Any]) -> Any:
        return await self.client.post("/api/v1/leads/analyze-deep", {
            "leadId": lead_id,
            "profile": profile,
            "posts": posts,
        })


class QualificationService:
    def __init__(self, client: ApiClient):
        self.client = client

    async def analyze(self, profile: Dict[str, Any], criteria: str) -> Optional[Analysis]:
        response = await self.client.post("/api/v1/leads/analyze", {"profile": profile, "criteria": criteria})
        return Analysis.from_api((response or {}).get("data"))
